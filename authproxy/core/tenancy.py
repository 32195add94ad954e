from typing import Any

# Placeholder account id meaning "no real tenant asserted by the record".
# Shippers send it when they have no account of their own to report.
SENTINEL_TENANT = "1000000"


def normalize_tenant(value: Any) -> str:
    """Render a tenant id from a JSON record or claim as a comparable string."""
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def resolve_tenant(asserted: Any, credential_tenant: str) -> str:
    """Pick the destination tenant for a single record.

    The record may route itself to another tenant unless it carries nothing
    or the sentinel, in which case the credential's tenant wins.
    """
    asserted = normalize_tenant(asserted)
    if not asserted or asserted == SENTINEL_TENANT:
        return credential_tenant
    if asserted == credential_tenant:
        return credential_tenant
    return asserted
