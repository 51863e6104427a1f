import hmac
import logging
from dataclasses import dataclass

from chatrelay.core.errors import AuthError, InvalidSourceError
from chatrelay.tenants.directory import TenantDirectory, TenantSettings

logger = logging.getLogger("relay.auth")


@dataclass(frozen=True)
class GrantedAccess:
    tenant: TenantSettings
    source_client: str | None


class AuthorizationGate:
    """Checks the presented key and declared source against the tenant record.

    Unknown tenants, tenants without a key and wrong keys all fail the same way so the
    response does not reveal which accounts exist.
    """

    def __init__(self, directory: TenantDirectory):
        self._directory = directory

    async def authorize(
        self,
        account_number: int,
        api_key: str | None,
        source_client: str | None,
        *,
        invalid_source_message: str = "Invalid sourceClient",
    ) -> GrantedAccess:
        tenant = await self._directory.get(account_number)

        if (
            tenant is None
            or not api_key
            or not tenant.api_key
            or not _keys_match(api_key, tenant.api_key)
        ):
            logger.warning(
                "unauthorized_request",
                extra={
                    "account_number": account_number,
                    "error": "has_key_header" if api_key else "missing_key_header",
                },
            )
            raise AuthError()

        if source_client is None:
            return GrantedAccess(tenant=tenant, source_client=tenant.default_source)

        if not tenant.allows_source(source_client):
            logger.warning(
                "invalid_source_client",
                extra={"account_number": account_number, "source_client": source_client},
            )
            raise InvalidSourceError(invalid_source_message)

        return GrantedAccess(tenant=tenant, source_client=source_client)


def _keys_match(presented: str, expected: str) -> bool:
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
