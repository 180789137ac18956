from fastapi import APIRouter

from ..providers.registry import supported_providers

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    return {"status": "ok", "providers": supported_providers()}
