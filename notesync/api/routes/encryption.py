"""Encryption passphrase endpoints.

The passphrase is held in memory for the lifetime of the server process and
never written to disk.
"""

import logging

from fastapi import APIRouter, HTTPException, status

from notesync.api.dependencies import ServiceDep
from notesync.api.models import EncryptionStatusResponse, PassphraseRequest

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=EncryptionStatusResponse)
async def get_encryption_status(service: ServiceDep):
    return EncryptionStatusResponse(**service.encryption.status())


@router.post("/passphrase", response_model=EncryptionStatusResponse)
async def set_passphrase(request: PassphraseRequest, service: ServiceDep):
    """Enable encryption and set the passphrase for this session."""
    try:
        encryption_status = await service.set_passphrase(request.passphrase)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return EncryptionStatusResponse(**encryption_status)


@router.delete("/passphrase", response_model=EncryptionStatusResponse)
async def clear_passphrase(service: ServiceDep, disable: bool = False):
    """Forget the passphrase; ``disable=true`` also turns encryption off."""
    return EncryptionStatusResponse(**await service.clear_passphrase(disable=disable))
