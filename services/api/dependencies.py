"""FastAPI dependency injection utilities."""

from typing import Annotated

from fastapi import Header, HTTPException, status


async def get_account_id(
    x_account_id: Annotated[str | None, Header(description="Calling account id")] = None,
) -> str:
    """Resolve the calling account.

    Authentication happens upstream (gateway / auth service), which forwards
    the authenticated account id in the ``X-Account-Id`` header.

    Raises:
        HTTPException: If the header is missing or blank
    """
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Account-Id header",
        )
    return x_account_id.strip()
