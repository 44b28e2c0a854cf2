"""
Identifier helpers shared by the normalizer, DDL emitter and registry
"""
import hashlib
import re

from .exceptions import ValidationError

PG_IDENTIFIER_LIMIT = 63

TENANT_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,63}$")
API_IDENTIFIER_PATTERN = re.compile(r"^[a-z0-9]{1,16}$")


def to_snake_case(name: str) -> str:
    """'BlogPost' / 'blog posts' / 'Blog-Post' -> 'blog_post(s)'"""
    text = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", str(name).strip())
    text = re.sub(r"[^a-zA-Z0-9]+", "_", text).strip("_").lower()
    text = re.sub(r"_+", "_", text)
    if text and text[0].isdigit():
        text = f"t_{text}"
    return text


def singularize(name: str) -> str:
    if name.endswith("ies") and len(name) > 3:
        return name[:-3] + "y"
    for suffix in ("sses", "xes", "ches", "shes", "zzes"):
        if name.endswith(suffix):
            return name[:-2]
    if name.endswith("s") and not name.endswith("ss") and len(name) > 1:
        return name[:-1]
    return name


def safe_identifier(value: str) -> str:
    """Strip anything outside [A-Za-z0-9_] for trigger, function and constraint names"""
    return re.sub(r"[^A-Za-z0-9_]", "_", value)


def shorten_identifier(value: str, limit: int = PG_IDENTIFIER_LIMIT) -> str:
    """Deterministically fit a derived name into PostgreSQL's identifier limit"""
    if len(value) <= limit:
        return value
    digest = hashlib.md5(value.encode("utf-8")).hexdigest()[:8]
    return f"{value[:limit - 9]}_{digest}"


def validate_tenant_id(tenant_id: str) -> str:
    if not tenant_id or not TENANT_PATTERN.match(str(tenant_id)):
        raise ValidationError(
            "Invalid tenant id: use letters, digits, '_' or '-' (max 63 characters)",
            {"field": "tenantId"},
        )
    return str(tenant_id)


def validate_api_identifier(api_identifier: str) -> str:
    if not api_identifier or not API_IDENTIFIER_PATTERN.match(api_identifier):
        raise ValidationError("Invalid API identifier", {"field": "apiIdentifier"})
    return api_identifier


def prefixed_name(tenant_id: str, api_identifier: str, original_name: str) -> str:
    """Physical table name: <tenant>_<apiIdentifier>_<original>, lowercased"""
    return f"{tenant_id}_{api_identifier}_{original_name}".lower()
