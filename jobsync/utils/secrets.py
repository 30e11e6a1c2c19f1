"""
Secrets management for JobSync using the system keyring.

Mail account passwords / app tokens and generative provider API keys are
never written to the config file or the database. The database only keeps a
`credential_ref` naming the keyring entry.

Every helper reports keyring trouble through its return value (None or
False) and the log, so a locked keyring degrades a feature instead of
crashing the host.
"""

import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

logger = logging.getLogger(__name__)

SERVICE_NAME = "jobsync"


def account_credential_ref(email: str) -> str:
    """Keyring username used for a mail account's secret."""
    return f"account:{email.strip().lower()}"


def api_key_ref(provider: str) -> str:
    return f"{provider}_api_key"


def _read(ref: str) -> Optional[str]:
    try:
        return keyring.get_password(SERVICE_NAME, ref)
    except KeyringError as e:
        logger.error(f"Keyring read failed for {ref}: {e}")
        return None


def _write(ref: str, secret: str) -> bool:
    try:
        keyring.set_password(SERVICE_NAME, ref, secret)
    except KeyringError as e:
        logger.error(f"Keyring write failed for {ref}: {e}")
        return False
    logger.info(f"Stored {ref} in keyring")
    return True


def _erase(ref: str) -> bool:
    try:
        keyring.delete_password(SERVICE_NAME, ref)
    except PasswordDeleteError:
        logger.debug(f"Nothing stored under {ref}")
        return False
    except KeyringError as e:
        logger.error(f"Keyring delete failed for {ref}: {e}")
        return False
    logger.info(f"Removed {ref} from keyring")
    return True


def get_api_key(provider: str) -> Optional[str]:
    """API key for a generative provider (e.g. 'openai'), None when absent."""
    return _read(api_key_ref(provider))


def set_api_key(provider: str, api_key: str) -> bool:
    return _write(api_key_ref(provider), api_key)


def delete_api_key(provider: str) -> bool:
    return _erase(api_key_ref(provider))


def get_account_secret(credential_ref: str) -> Optional[str]:
    """
    Password / app token for a mail account.

    Args:
        credential_ref: Keyring username, see account_credential_ref()
    """
    return _read(credential_ref)


def set_account_secret(credential_ref: str, secret: str) -> bool:
    return _write(credential_ref, secret)


def delete_account_secret(credential_ref: str) -> bool:
    return _erase(credential_ref)
