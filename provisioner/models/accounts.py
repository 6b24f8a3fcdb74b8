from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field


class SecondaryStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"


class PrimaryAccount(BaseModel):
    public_key: str
    balance_major: Decimal = Decimal("0")
    balance_minor: Decimal = Decimal("0")


class SecondaryAccount(BaseModel):
    public_key: Optional[str] = None
    eta_seconds: Optional[int] = Field(default=None, ge=0)
    balance_major: Decimal = Decimal("0")
    balance_minor: Decimal = Decimal("0")

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> SecondaryStatus:
        # Derived only; a secondary account is ready exactly when its key is known.
        return SecondaryStatus.READY if self.public_key else SecondaryStatus.PENDING


class AccountRecord(BaseModel):
    identity_key: str
    primary: PrimaryAccount
    secondary: SecondaryAccount = Field(default_factory=SecondaryAccount)
    created_at: Optional[datetime] = None

    @property
    def secondary_ready(self) -> bool:
        return self.secondary.status is SecondaryStatus.READY


class AccountPatch(BaseModel):
    """Partial update for an account, validated where data enters the system.

    Every field is optional. ``None`` means "not observed by this source" and is
    never treated as an instruction to clear a value.
    """

    primary_public_key: Optional[str] = None
    primary_balance_major: Optional[Decimal] = None
    primary_balance_minor: Optional[Decimal] = None
    secondary_public_key: Optional[str] = None
    secondary_eta_seconds: Optional[int] = Field(default=None, ge=0)
    secondary_balance_major: Optional[Decimal] = None
    secondary_balance_minor: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    def observed_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

    @staticmethod
    def from_job_response(payload: dict[str, Any]) -> "AccountPatch":
        """Map a primary-creation / balance job response onto account fields."""

        return AccountPatch.model_validate(
            {
                "primary_public_key": payload.get("distributor_public_key") or payload.get("in_app_public_key"),
                "primary_balance_major": _first_present(
                    payload, "distributor_balance_sol", "balance_sol", "current_balance_sol"
                ),
                "primary_balance_minor": _first_present(payload, "distributor_balance_spl", "current_balance_spl"),
                "secondary_public_key": payload.get("dev_public_key"),
                "secondary_eta_seconds": payload.get("dev_wallet_ready_in_seconds"),
            }
        )

    @staticmethod
    def from_secondary_balance_response(payload: dict[str, Any]) -> "AccountPatch":
        return AccountPatch.model_validate(
            {
                "secondary_public_key": payload.get("dev_public_key"),
                "secondary_balance_major": _first_present(payload, "current_balance_sol", "dev_balance_sol"),
                "secondary_balance_minor": _first_present(payload, "current_spl_balance", "dev_balance_spl"),
            }
        )

    @staticmethod
    def from_store_row(row: dict[str, Any]) -> "AccountPatch":
        return AccountPatch.model_validate(
            {
                "primary_public_key": row.get("distributor_public_key"),
                "primary_balance_major": row.get("distributor_balance_sol"),
                "primary_balance_minor": row.get("distributor_balance_spl"),
                "secondary_public_key": row.get("dev_public_key"),
                "secondary_eta_seconds": row.get("dev_wallet_ready_in_seconds"),
                "secondary_balance_major": row.get("dev_balance_sol"),
                "secondary_balance_minor": row.get("dev_balance_spl"),
                "created_at": row.get("created_at"),
            }
        )

    @staticmethod
    def from_record(record: AccountRecord) -> "AccountPatch":
        return AccountPatch(
            primary_public_key=record.primary.public_key,
            primary_balance_major=record.primary.balance_major,
            primary_balance_minor=record.primary.balance_minor,
            secondary_public_key=record.secondary.public_key,
            secondary_eta_seconds=record.secondary.eta_seconds,
            secondary_balance_major=record.secondary.balance_major,
            secondary_balance_minor=record.secondary.balance_minor,
            created_at=record.created_at,
        )


class ResourceBundle(BaseModel):
    id: str
    owner_identity_key: str
    allocated_units: int = Field(default=1, ge=1)
    is_active: bool = True
    total_balance_major: Decimal = Decimal("0")
    total_balance_minor: Decimal = Decimal("0")
    name: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None

    @staticmethod
    def from_store_row(row: dict[str, Any]) -> "ResourceBundle":
        return ResourceBundle.model_validate(
            {
                "id": str(row.get("id")),
                "owner_identity_key": row.get("user_wallet_id"),
                "allocated_units": row.get("bundler_balance") or 1,
                "is_active": bool(row.get("is_active", True)),
                "total_balance_major": row.get("total_balance_sol") or 0,
                "total_balance_minor": row.get("total_balance_spl") or 0,
                "name": row.get("token_name"),
                "idempotency_key": row.get("idempotency_key"),
                "created_at": row.get("created_at"),
            }
        )


class BundlePatch(BaseModel):
    """Partial update for one bundle; ``id`` is the merge key."""

    id: str
    owner_identity_key: Optional[str] = None
    allocated_units: Optional[int] = Field(default=None, ge=1)
    is_active: Optional[bool] = None
    total_balance_major: Optional[Decimal] = None
    total_balance_minor: Optional[Decimal] = None
    name: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None

    def observed_fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"id"})

    @staticmethod
    def from_bundle(bundle: ResourceBundle) -> "BundlePatch":
        return BundlePatch.model_validate(bundle.model_dump())

    @staticmethod
    def from_job_response(
        payload: dict[str, Any],
        *,
        owner_identity_key: str,
        units: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> "BundlePatch":
        allocated = payload.get("allocated_mother_wallets")
        if isinstance(allocated, list) and allocated:
            units = len(allocated)

        bundle_id = payload.get("bundler_id", payload.get("bundle_id", payload.get("id")))
        if bundle_id is None:
            raise ValueError("Bundle payload is missing an id")

        return BundlePatch.model_validate(
            {
                "id": str(bundle_id),
                "owner_identity_key": owner_identity_key,
                "allocated_units": units,
                "is_active": payload.get("is_active"),
                "total_balance_major": payload.get("total_balance_sol"),
                "total_balance_minor": payload.get("total_balance_spl"),
                "idempotency_key": payload.get("idempotency_key") or idempotency_key,
            }
        )


class TokenRecord(BaseModel):
    id: Optional[str] = None
    owner_identity_key: str
    name: str
    symbol: str = Field(..., max_length=5)
    description: Optional[str] = None
    image_url: Optional[str] = None
    contract_address: Optional[str] = None
    dev_buy_amount: Decimal = Decimal("0")
    twitter: Optional[str] = None
    telegram: Optional[str] = None
    website: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def merge_key(self) -> str:
        return self.contract_address or self.id or f"{self.symbol}:{self.name}"

    @staticmethod
    def from_store_row(row: dict[str, Any]) -> "TokenRecord":
        return TokenRecord.model_validate(
            {
                "id": str(row["id"]) if row.get("id") is not None else None,
                "owner_identity_key": row.get("user_wallet_id"),
                "name": row.get("name"),
                "symbol": row.get("symbol"),
                "description": row.get("description"),
                "image_url": row.get("image_url"),
                "contract_address": row.get("contract_address"),
                "dev_buy_amount": row.get("dev_buy_amount") or 0,
                "twitter": row.get("twitter"),
                "telegram": row.get("telegram"),
                "website": row.get("website"),
                "created_at": row.get("created_at"),
            }
        )

    def to_store_row(self) -> dict[str, Any]:
        return {
            "user_wallet_id": self.owner_identity_key,
            "name": self.name,
            "symbol": self.symbol,
            "description": self.description,
            "image_url": self.image_url,
            "twitter": self.twitter,
            "telegram": self.telegram,
            "website": self.website,
            "dev_buy_amount": str(self.dev_buy_amount),
            "contract_address": self.contract_address,
        }


class ResourceRequest(BaseModel):
    """What the user asked for when creating a resource on the secondary account."""

    name: str = Field(..., min_length=1)
    symbol: str = Field(..., min_length=1, max_length=5)
    description: str = ""
    logo_base64: str = ""
    twitter: str = ""
    telegram: str = ""
    website: str = ""
    dev_buy_amount: Decimal = Field(default=Decimal("0"), ge=0)
    slippage: float = Field(default=1.0, gt=0)
    priority_fee: str = "0.000005"

    def to_payload(self, identity_key: str) -> dict[str, Any]:
        payload = self.model_dump()
        payload["dev_buy_amount"] = str(self.dev_buy_amount)
        payload["user_wallet_id"] = identity_key
        return payload

    def to_token(self, identity_key: str, result: dict[str, Any]) -> TokenRecord:
        return TokenRecord(
            owner_identity_key=identity_key,
            name=self.name,
            symbol=self.symbol,
            description=self.description or None,
            image_url=result.get("image_url") or result.get("imageUrl"),
            contract_address=result.get("contract_address") or result.get("contractAddress"),
            dev_buy_amount=self.dev_buy_amount,
            twitter=self.twitter or None,
            telegram=self.telegram or None,
            website=self.website or None,
        )


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None
