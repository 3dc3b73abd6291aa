from fastapi import APIRouter, HTTPException, status
from models import SignupRequest, LoginRequest, TokenResponse
from auth import create_user_token, validate_password_strength
from services.user_service import user_service, EmailAlreadyRegisteredError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])

def _token_response(user: dict) -> TokenResponse:
    token = create_user_token(user)
    return TokenResponse(access_token=token, user=user_service.to_profile(user))

@router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
async def signup(body: SignupRequest):
    """Create an account on the free plan."""
    is_valid, message = validate_password_strength(body.password)
    if not is_valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)

    try:
        user = await user_service.create_user(body.email, body.name, body.password)
    except EmailAlreadyRegisteredError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return _token_response(user)

@router.post("/login", response_model=TokenResponse)
async def login(credentials: LoginRequest):
    user = await user_service.authenticate(credentials.email, credentials.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )

    logger.info("User logged in: %s", user["user_id"])
    return _token_response(user)
