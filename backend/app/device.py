"""Device identification for API requests.

Every request is scoped to the device id in the X-Device-ID header. A request
without one is assigned a fresh id, echoed back in the response header so
the client can persist it.
"""

import re
import uuid
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Response, status

DEVICE_HEADER = "X-Device-ID"

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_device_id(value: str | None) -> bool:
    return bool(value) and bool(_UUID_RE.match(value))


async def get_device_id(
    response: Response,
    x_device_id: Annotated[str | None, Header(alias=DEVICE_HEADER)] = None,
) -> str:
    """Resolve the calling device, generating an id when none was sent."""
    if not x_device_id:
        device_id = str(uuid.uuid4())
        response.headers[DEVICE_HEADER] = device_id
        return device_id

    if not is_valid_device_id(x_device_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid device ID format: must be a valid UUID",
        )
    return x_device_id


# Type alias for dependency injection
DeviceId = Annotated[str, Depends(get_device_id)]
