# Identity Package
from identity.resolver import IdentityResolver, IdentityResolution, generate_identity
from identity.cookies import get_cookie_value, serialize_identity_cookie

__all__ = [
    "IdentityResolver",
    "IdentityResolution",
    "generate_identity",
    "get_cookie_value",
    "serialize_identity_cookie",
]
