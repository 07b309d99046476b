import logging
import os
from typing import Optional, Tuple

import httpx

from exceptions import DirectoryUnavailableError, UnknownReferenceError

logger = logging.getLogger(__name__)

# Defaulting to local sibling services for development
TEACHER_SERVICE_URL = os.getenv("TEACHER_SERVICE_URL", "http://localhost:8001")
SUBJECT_SERVICE_URL = os.getenv("SUBJECT_SERVICE_URL", "http://localhost:8002")
DIRECTORY_TIMEOUT = float(os.getenv("DIRECTORY_TIMEOUT", "10"))


async def validate_external_id(
    client: httpx.AsyncClient,
    service_url: str,
    endpoint: str,
    payload_key: str,
    id_key: str,
    id_val: str,
    token: str
) -> Optional[str]:
    """
    Call the validate-existence endpoint of a sibling service.
    Returns the object name if found, None otherwise.
    """
    payload = {payload_key: [{id_key: id_val}]}
    try:
        resp = await client.post(
            f"{service_url}/{endpoint}",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
    except httpx.RequestError as e:
        logger.warning("Error calling %s: %s", service_url, e)
        raise DirectoryUnavailableError(f"{payload_key.capitalize()} service unavailable") from e

    if resp.status_code != 200:
        return None

    # Structure: {"valid": bool, <payload_key>: [{id:..., name:...}]}
    try:
        data = resp.json()
        if not data.get("valid"):
            return None
        items = data.get(payload_key) or []
        return items[0].get("name") if items else None
    except (ValueError, AttributeError, LookupError, TypeError) as e:
        logger.warning("Malformed answer from %s: %s", service_url, e)
        raise DirectoryUnavailableError(
            f"{payload_key.capitalize()} service returned an invalid response"
        ) from e


class Directory:
    """Looks up teachers and subjects in their owning services."""

    def __init__(
        self,
        teacher_service_url: str = TEACHER_SERVICE_URL,
        subject_service_url: str = SUBJECT_SERVICE_URL,
        timeout: float = DIRECTORY_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.teacher_service_url = teacher_service_url
        self.subject_service_url = subject_service_url
        self.timeout = timeout
        self.transport = transport

    async def resolve_names(self, teacher_id: str, subject_id: str, token: str) -> Tuple[str, str]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            teacher_name = await validate_external_id(
                client, self.teacher_service_url, "teachers/validate-existence",
                "teachers", "id", teacher_id, token
            )
            if not teacher_name:
                raise UnknownReferenceError("Teacher", teacher_id)

            subject_name = await validate_external_id(
                client, self.subject_service_url, "subjects/validate-existence",
                "subjects", "id", subject_id, token
            )
            if not subject_name:
                raise UnknownReferenceError("Subject", subject_id)

        return teacher_name, subject_name
