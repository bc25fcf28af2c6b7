"""
FastAPI REST API Module

Thin HTTP adapter over the wallet services: authentication endpoints under
/auth and balance operations under /user. Endpoints are plain (sync) functions,
so FastAPI runs each request on its own worker thread.
"""

from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field, StrictInt, StrictStr
import uvicorn

from .config import get_config
from .errors import UnauthorizedError, WalletError
from .logging_config import setup_logging
from .system import WalletSystem


# Pydantic models for API requests
class CredentialsRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str


class TransferRequest(BaseModel):
    receiver_id: str
    amount: Union[StrictInt, StrictStr] = Field(..., description="Decimal amount, at most two places")


class DepositRequest(BaseModel):
    amount: Union[StrictInt, StrictStr] = Field(..., description="Decimal amount, at most two places")


# JWT Security
security = HTTPBearer(auto_error=False)


def get_wallet_system(request: Request) -> WalletSystem:
    return request.app.state.wallet


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: WalletSystem = Depends(get_wallet_system)
) -> str:
    """Dependency that validates the access token and returns the caller's user id"""
    if not credentials:
        raise UnauthorizedError("Not authenticated", code="invalid_token")
    return system.gate.authorize(credentials.credentials)


async def wallet_error_handler(request: Request, exc: WalletError) -> JSONResponse:
    headers = {}
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers["WWW-Authenticate"] = "Bearer"
    if exc.retryable:
        headers["Retry-After"] = "1"
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app(system: Optional[WalletSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = None
        if getattr(app.state, "wallet", None) is None:
            config = get_config()
            setup_logging(config.log_level, fmt=config.log_format, log_file=config.log_file)
            owned = WalletSystem(config)
            app.state.wallet = owned
        yield
        if owned is not None:
            owned.close()

    app = FastAPI(
        title="Core Wallet API",
        description="User authentication and transactional balance transfers",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.wallet = system
    app.add_exception_handler(WalletError, wallet_error_handler)

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "service": "core_wallet_api", "version": "1.0.0"}

    @app.post("/auth/register", status_code=status.HTTP_201_CREATED, tags=["Auth"])
    def register(request: CredentialsRequest,
                 system: WalletSystem = Depends(get_wallet_system)):
        """Register a new user"""
        return system.auth.register(request.username, request.password)

    @app.post("/auth/login", tags=["Auth"])
    def login(request: CredentialsRequest,
              system: WalletSystem = Depends(get_wallet_system)):
        """Authenticate and return an access token plus a refresh token"""
        return system.auth.login(request.username, request.password).to_dict()

    @app.post("/auth/refresh", tags=["Auth"])
    def refresh(request: RefreshRequest,
                system: WalletSystem = Depends(get_wallet_system)):
        """Exchange a refresh token for a new token pair"""
        return system.auth.refresh(request.refresh_token).to_dict()

    @app.post("/auth/logout", status_code=status.HTTP_204_NO_CONTENT, tags=["Auth"])
    def logout(request: RefreshRequest,
               system: WalletSystem = Depends(get_wallet_system)):
        """Revoke a refresh token"""
        system.auth.logout(request.refresh_token)

    @app.post("/user", status_code=status.HTTP_201_CREATED, tags=["User"])
    def create_user(request: CredentialsRequest,
                    user_id: str = Depends(get_current_user),
                    system: WalletSystem = Depends(get_wallet_system)):
        """Create a user on behalf of an authenticated caller"""
        return system.users.create_user(request.username, request.password).to_public_dict()

    @app.get("/user/me", tags=["User"])
    def get_me(user_id: str = Depends(get_current_user),
               system: WalletSystem = Depends(get_wallet_system)):
        """Caller's own account"""
        user = system.users.get_user(user_id)
        if user is None:
            raise UnauthorizedError("Not authenticated", code="invalid_token")
        return user.to_public_dict()

    @app.post("/user/transfer", tags=["User"])
    def transfer(request: TransferRequest,
                 user_id: str = Depends(get_current_user),
                 system: WalletSystem = Depends(get_wallet_system)):
        """Transfer part of the caller's balance to another user"""
        return system.ledger.transfer(user_id, request.receiver_id, request.amount).to_dict()

    @app.post("/user/deposit", status_code=status.HTTP_204_NO_CONTENT, tags=["User"])
    def deposit(request: DepositRequest,
                user_id: str = Depends(get_current_user),
                system: WalletSystem = Depends(get_wallet_system)):
        """Add funds to the caller's balance"""
        system.ledger.deposit(user_id, request.amount)

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "core_wallet.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        workers=config.api_workers,
        reload=debug,
        log_level=config.log_level.lower()
    )
