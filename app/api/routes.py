from fastapi import APIRouter

from app.api.chat import router as chat_router

router = APIRouter()

router.include_router(chat_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the CoachFlow Chat API"}
