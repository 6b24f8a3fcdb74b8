"""Configuration package (Facade).

Re-exports the public config types so callers import from a single, stable path:

	from provisioner.services.config import RemoteJobConfig

The module layout underneath can change without touching call sites; ``__all__``
defines the public API of this package.
"""

from provisioner.services.config.provisioning_config import ProvisioningConfig
from provisioner.services.config.record_store_config import RecordStoreConfig
from provisioner.services.config.remote_job_config import RemoteJobConfig

__all__ = ["ProvisioningConfig", "RecordStoreConfig", "RemoteJobConfig"]
