"""
FastAPI reference service for the OpenKey client.

This server:
- Handles user registration and authentication
- Stores messages exactly as sent (secret content arrives encrypted)
- Serves per-counterpart message history for polling clients
- Accepts and serves file uploads
"""

import os
import logging
import secrets
import time
from pathlib import Path
from typing import List, Optional
from fastapi import FastAPI, HTTPException, Depends, UploadFile, File
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field
from contextlib import asynccontextmanager

from .database import Database
from .auth import create_access_token, current_user_id

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("OPENKEY_DATABASE_URL", "sqlite+aiosqlite:///./openkey.db")
UPLOAD_DIR = os.environ.get("OPENKEY_UPLOAD_DIR", "uploads")
MAX_UPLOAD_BYTES = 50 * 1024 * 1024


# Pydantic models for API
class Credentials(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class UserOut(BaseModel):
    id: str
    username: str
    avatar: Optional[str] = None
    isOnline: bool


class AuthResponse(BaseModel):
    token: str
    user: UserOut


class SendMessage(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    receiverId: str
    text: str = ""
    attachmentUrl: Optional[str] = None
    attachmentType: Optional[str] = None
    isSecret: bool = False


def create_app(database_url: str = DATABASE_URL, upload_dir: str = UPLOAD_DIR) -> FastAPI:
    """
    Build the service application.

    Args:
        database_url: SQLAlchemy database URL
        upload_dir: Directory uploaded files are written to

    Returns:
        Configured FastAPI app
    """
    db = Database(database_url)
    uploads = Path(upload_dir)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        uploads.mkdir(parents=True, exist_ok=True)
        await db.create_tables()
        logger.info("Database initialized")
        yield
        await db.dispose()
        logger.info("Server shutting down")

    app = FastAPI(
        title="OpenKey Chat Service",
        description="Message store for clients with client-side secret chats",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.db = db
    app.state.upload_dir = uploads

    async def active_user(user_id: int = Depends(current_user_id)) -> int:
        await db.touch(user_id)
        return user_id

    def auth_response(user) -> AuthResponse:
        token = create_access_token(str(user.id), user.username)
        return AuthResponse(token=token, user=UserOut(**user.to_dict()))

    @app.post("/register", response_model=AuthResponse)
    async def register(credentials: Credentials):
        user = await db.create_user(credentials.username, credentials.password)
        if not user:
            raise HTTPException(status_code=409, detail="Username taken")
        return auth_response(user)

    @app.post("/login", response_model=AuthResponse)
    async def login(credentials: Credentials):
        """Authenticate a user and return JWT token"""
        user = await db.authenticate_user(credentials.username, credentials.password)
        if not user:
            raise HTTPException(status_code=401, detail="Invalid username or password")
        return auth_response(user)

    @app.get("/me")
    async def me(user_id: int = Depends(active_user)):
        user = await db.get_user(user_id)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        return {"user": user.to_dict()}

    @app.get("/users", response_model=List[UserOut])
    async def list_users(user_id: int = Depends(active_user)):
        """List everyone except the caller"""
        return [user.to_dict() for user in await db.list_users(exclude_id=user_id)]

    @app.get("/messages/{partner_id}")
    async def get_messages(partner_id: int, user_id: int = Depends(active_user)):
        messages = await db.get_conversation(user_id, partner_id)
        return [m.to_dict(user_id) for m in messages]

    @app.post("/messages")
    async def send_message(body: SendMessage, user_id: int = Depends(active_user)):
        try:
            receiver_id = int(body.receiverId)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid receiver")
        if not await db.get_user(receiver_id):
            raise HTTPException(status_code=404, detail="Receiver not found")

        message = await db.create_message(
            sender_id=user_id,
            receiver_id=receiver_id,
            content=body.text,
            attachment_url=body.attachmentUrl,
            attachment_type=body.attachmentType,
            is_secret=body.isSecret,
        )
        return {"success": True, "id": str(message.id)}

    @app.post("/messages/{partner_id}/read")
    async def mark_read(partner_id: int, user_id: int = Depends(active_user)):
        await db.mark_read(partner_id, user_id)
        return {"success": True}

    @app.post("/upload")
    async def upload(file: UploadFile = File(...),
                     user_id: int = Depends(active_user)):
        data = await file.read()
        if len(data) > MAX_UPLOAD_BYTES:
            raise HTTPException(status_code=413, detail="File too large")

        original_name = file.filename or "file"
        filename = f"{int(time.time() * 1000)}-{secrets.token_hex(4)}{Path(original_name).suffix}"
        uploads.mkdir(parents=True, exist_ok=True)
        (uploads / filename).write_bytes(data)

        media_type = file.content_type or ""
        return {
            "url": f"uploads/{filename}",
            "type": "image" if media_type.startswith("image/") else "file",
            "originalName": original_name,
        }

    # Serve uploaded files
    app.mount("/uploads", StaticFiles(directory=str(uploads), check_dir=False), name="uploads")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8787")))
