"""
Snowflake database connection management.

Provides the connection factory and context manager for the metadata
store. Mock mode doesn't need a connection at all - it uses the
in-memory store instead (see store.py).
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Optional, Protocol

logger = logging.getLogger(__name__)


class SnowflakeConnectionError(Exception):
    """Raised when Snowflake connection fails."""
    pass


class SnowflakeConnection(Protocol):
    """
    Protocol for Snowflake connections.

    Using a protocol means tests can provide a fake without
    importing the actual snowflake-connector-python.
    """

    def cursor(self): ...
    def commit(self) -> None: ...


@dataclass
class SnowflakeConfig:
    """Configuration for Snowflake connection."""
    account: str
    user: str
    password: Optional[str] = None
    private_key_path: Optional[str] = None
    database: str = "PATERBROWN"
    schema: str = "PUBLIC"
    warehouse: str = "COMPUTE_WH"
    role: Optional[str] = None
    timeout_seconds: float = 30.0


def _load_private_key(key_path: str) -> bytes:
    """
    Load private key from file for key-pair authentication.

    Snowflake requires the private key as DER bytes, not a file path.
    """
    from cryptography.hazmat.backends import default_backend
    from cryptography.hazmat.primitives import serialization

    with open(key_path, 'rb') as key_file:
        private_key = serialization.load_pem_private_key(
            key_file.read(),
            password=None,
            backend=default_backend()
        )

    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )


@contextmanager
def get_snowflake_connection(config: SnowflakeConfig) -> Generator[SnowflakeConnection, None, None]:
    """
    Provide Snowflake connection with automatic cleanup.

    Supports both password and key-pair authentication:
    - If private_key_path is set, uses key-pair auth
    - Otherwise, uses password auth

    Usage:
        with get_snowflake_connection(config) as conn:
            store = SnowflakeMetadataStore(conn)
    """
    try:
        import snowflake.connector
    except ImportError:
        raise ImportError(
            "snowflake-connector-python is required. "
            "Install with: pip install snowflake-connector-python"
        )

    conn = None
    try:
        connect_params = {
            'account': config.account,
            'user': config.user,
            'database': config.database,
            'schema': config.schema,
            'warehouse': config.warehouse,
            'role': config.role,
            # The driver takes whole seconds for both.
            'login_timeout': max(1, int(config.timeout_seconds)),
            'network_timeout': max(1, int(config.timeout_seconds)),
        }

        if config.private_key_path:
            logger.info("Using key-pair authentication for Snowflake")
            connect_params['private_key'] = _load_private_key(config.private_key_path)
        elif config.password:
            logger.info("Using password authentication for Snowflake")
            connect_params['password'] = config.password
        else:
            raise SnowflakeConnectionError(
                "Either password or private_key_path must be provided"
            )

        conn = snowflake.connector.connect(**connect_params)

        logger.debug(
            "Established Snowflake connection",
            extra={
                "account": config.account,
                "database": config.database,
                "schema": config.schema,
            }
        )

        yield conn

    except snowflake.connector.errors.DatabaseError as e:
        logger.error(
            "Snowflake connection failed",
            extra={"error": str(e), "account": config.account}
        )
        raise SnowflakeConnectionError(f"Database connection failed: {e}")

    finally:
        if conn:
            try:
                conn.close()
                logger.debug("Closed Snowflake connection")
            except Exception as e:
                logger.warning(
                    "Error closing Snowflake connection",
                    extra={"error": str(e)}
                )
