"""
Connection resolver: which gateway phone number a workspace sends from, and
with which access token.
"""
import logging
from typing import Optional

from messaging.models import Connection

logger = logging.getLogger(__name__)

CONNECTION_MISSING = 'connection_missing'
CONNECTION_NOT_FOUND = 'connection_not_found'
TOKEN_NOT_FOUND = 'token_not_found'
TOKEN_OR_PHONE_MISSING = 'token_or_phone_missing'
TEMPLATE_NOT_FOUND = 'template_not_found'


class ConfigurationError(Exception):
    """
    Raised when a send cannot be attempted because the workspace is missing
    configuration. Retrying does not help; ``reason`` is an operator-facing code.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def find_connection(connection_id: Optional[int]) -> Connection:
    """
    Load an active connection by id.

    Raises:
        ConfigurationError: connection_missing / connection_not_found
    """
    if not connection_id:
        raise ConfigurationError(CONNECTION_MISSING)

    connection = Connection.objects.filter(id=connection_id, is_active=True).first()
    if connection is None:
        logger.warning(f"Connection {connection_id} not found or inactive")
        raise ConfigurationError(CONNECTION_NOT_FOUND)
    return connection


def resolve_connection(workspace_id: str) -> Optional[Connection]:
    """Default (oldest active) connection of a workspace, if any."""
    return (
        Connection.objects
        .filter(workspace_id=workspace_id, is_active=True)
        .order_by('id')
        .first()
    )


def resolve_token(workspace_id: str, phone_number_id: str, waba_id: Optional[str] = None) -> Optional[str]:
    """
    Access token for a workspace's phone number.

    Prefers the connection registered for exactly this phone number; falls
    back to any connection of the same business account.
    """
    candidates = Connection.objects.filter(workspace_id=workspace_id, is_active=True)

    exact = candidates.filter(phone_number_id=phone_number_id).exclude(access_token__isnull=True).first()
    if exact and exact.access_token:
        return exact.access_token

    if waba_id:
        shared = candidates.filter(waba_id=waba_id).exclude(access_token__isnull=True).first()
        if shared and shared.access_token:
            return shared.access_token

    return None


def find_workspace_for_phone_number(phone_number_id: Optional[str], waba_id: Optional[str]) -> Optional[str]:
    """Workspace owning a gateway phone number id (or business account id)."""
    if phone_number_id:
        workspace_id = (
            Connection.objects
            .filter(phone_number_id=phone_number_id, is_active=True)
            .values_list('workspace_id', flat=True)
            .first()
        )
        if workspace_id:
            return workspace_id

    if waba_id:
        return (
            Connection.objects
            .filter(waba_id=waba_id, is_active=True)
            .values_list('workspace_id', flat=True)
            .first()
        )

    return None
