"""
Admission webhooks for KeystoneAPI and KeystoneService resources.

The mutating webhook fills computed defaults into a KeystoneAPI spec; the
validating webhooks reject specs the reconcilers could never satisfy:
- Pydantic model validation (required fields, fernetMaxActiveKeys >= 3)
- Routed service override keys, which must name a known endpoint type
"""

import logging
from typing import Any

import kopf
from pydantic import ValidationError

from keystone_operator.constants import (
    KEYSTONE_API_PLURAL,
    KEYSTONE_GROUP,
    KEYSTONE_SERVICE_PLURAL,
    KEYSTONE_VERSION,
)
from keystone_operator.models.keystone import (
    KeystoneAPIDefaulter,
    KeystoneAPIDefaults,
    KeystoneAPISpec,
    KeystoneServiceSpec,
    validate_routed_overrides,
)
from keystone_operator.settings import settings

logger = logging.getLogger(__name__)


def get_defaulter(memo: Any) -> KeystoneAPIDefaulter:
    defaulter = memo.get("keystone_api_defaulter") if memo is not None else None
    if defaulter is None:
        defaulter = KeystoneAPIDefaulter(
            KeystoneAPIDefaults(container_image_url=settings.keystone_api_image)
        )
    return defaulter


@kopf.on.mutate(
    KEYSTONE_GROUP, KEYSTONE_VERSION, KEYSTONE_API_PLURAL, id="default-keystoneapi"
)
async def default_keystone_api(
    spec: dict,
    name: str,
    namespace: str,
    patch: kopf.Patch,
    memo: kopf.Memo,
    **kwargs,
) -> None:
    """
    Fill empty defaultable fields of a KeystoneAPI spec.

    Args:
        spec: Resource specification as submitted
        name: Resource name
        namespace: Resource namespace
        patch: Patch the admission response is built from
        memo: Operator memo holding the startup defaulter
    """
    changes = get_defaulter(memo).patch(dict(spec or {}))
    for key, value in changes.items():
        logger.debug(f"Defaulting KeystoneAPI {namespace}/{name} spec.{key}={value}")
        patch.spec[key] = value


@kopf.on.validate(
    KEYSTONE_GROUP, KEYSTONE_VERSION, KEYSTONE_API_PLURAL, id="validate-keystoneapi"
)
async def validate_keystone_api(
    spec: dict,
    name: str,
    namespace: str,
    operation: str,
    dryrun: bool,
    **kwargs,
) -> dict:
    """
    Validate a KeystoneAPI before admission.

    Args:
        spec: Resource specification
        name: Resource name
        namespace: Resource namespace
        operation: CREATE, UPDATE or DELETE
        dryrun: Whether this is a dry-run request

    Returns:
        Empty dict when the resource is allowed

    Raises:
        kopf.AdmissionError: If validation fails
    """
    if operation == "DELETE":
        return {}

    logger.info(
        f"Validating KeystoneAPI {name} in namespace {namespace} "
        f"(operation: {operation}, dryrun: {dryrun})"
    )

    service_overrides = ((spec or {}).get("override") or {}).get("service")
    errors = validate_routed_overrides(service_overrides)
    if errors:
        error_msg = f"Invalid KeystoneAPI specification: {'; '.join(errors)}"
        logger.warning(f"KeystoneAPI {name} rejected: {error_msg}")
        raise kopf.AdmissionError(error_msg)

    try:
        KeystoneAPISpec.model_validate(spec)
    except ValidationError as e:
        error_msg = f"Invalid KeystoneAPI specification: {e}"
        logger.warning(f"KeystoneAPI {name} validation failed: {error_msg}")
        raise kopf.AdmissionError(error_msg) from e

    return {}


@kopf.on.validate(
    KEYSTONE_GROUP,
    KEYSTONE_VERSION,
    KEYSTONE_SERVICE_PLURAL,
    id="validate-keystoneservice",
)
async def validate_keystone_service(
    spec: dict,
    name: str,
    namespace: str,
    operation: str,
    **kwargs,
) -> dict:
    """Validate a KeystoneService before admission."""
    if operation == "DELETE":
        return {}

    try:
        KeystoneServiceSpec.model_validate(spec)
    except ValidationError as e:
        error_msg = f"Invalid KeystoneService specification: {e}"
        logger.warning(f"KeystoneService {name} validation failed: {error_msg}")
        raise kopf.AdmissionError(error_msg) from e

    return {}
