"""
Credential lookup for the object storage backend.

Operators enter the endpoint and key pair in the dashboard's settings
screen, which writes them to the admin_settings table. Jobs read them
once at start through CredentialProvider and hold them in memory only
for the duration of the run.
"""

import logging

from ...core.jobs.models import ConfigurationError, Credentials
from .store import MetadataStore, MetadataStoreError

logger = logging.getLogger(__name__)

ENDPOINT_KEY = "r2_endpoint"
ACCESS_KEY_ID_KEY = "r2_access_key_id"
SECRET_ACCESS_KEY_KEY = "r2_secret_access_key"

SETTING_KEYS = (ENDPOINT_KEY, ACCESS_KEY_ID_KEY, SECRET_ACCESS_KEY_KEY)


class CredentialProvider:
    """Resolves storage credentials from the metadata store's settings record."""

    def __init__(self, store: MetadataStore) -> None:
        self._store = store

    def load(self) -> Credentials:
        """
        Read and validate the three credential settings.

        Raises ConfigurationError when the settings can't be read or any
        value is missing. Error messages name the missing setting keys,
        never the values.
        """
        try:
            values = self._store.get_settings(SETTING_KEYS)
        except MetadataStoreError as e:
            logger.error("Failed to fetch storage settings", extra={"error": str(e)})
            raise ConfigurationError("Failed to fetch storage configuration")

        missing = [key for key in SETTING_KEYS if not (values.get(key) or "").strip()]
        if missing:
            logger.error("Storage credentials not configured", extra={"missing": missing})
            raise ConfigurationError(
                "Storage credentials not configured "
                f"(missing {', '.join(missing)}). Please add them in Admin Settings first."
            )

        logger.info("Loaded storage credentials", extra={"endpoint": values[ENDPOINT_KEY]})

        return Credentials(
            endpoint=values[ENDPOINT_KEY].strip(),
            access_key_id=values[ACCESS_KEY_ID_KEY].strip(),
            secret_access_key=values[SECRET_ACCESS_KEY_KEY].strip(),
        ).validate()
