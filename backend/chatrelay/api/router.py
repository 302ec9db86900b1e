from fastapi import APIRouter

from chatrelay.api.routes import chat, health

api_router = APIRouter()

api_router.include_router(chat.router, tags=["Chat"])
api_router.include_router(health.router, tags=["Health"])
