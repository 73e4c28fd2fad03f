from fastapi import APIRouter

from app.api.rooms import router as rooms_router
from app.api.tokens import router as tokens_router

router = APIRouter()

router.include_router(rooms_router)
router.include_router(tokens_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the She Means Business lounge API"}
