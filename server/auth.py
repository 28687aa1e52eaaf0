"""
Authentication Module for ReWear Exchange API

This module handles user authentication, authorization, and admin verification.
The verified user is passed explicitly into every service call; nothing reads
an ambient session.
"""

from fastapi import HTTPException, Depends, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from firebase_admin import auth
from database import LedgerStore, get_ledger_store
from firebase_init import initialize_firebase
from models import User
from services.accounts import AccountService
import logging

logger = logging.getLogger(__name__)

# Security
security = HTTPBearer(auto_error=False)


async def verify_firebase_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """
    Verify Firebase ID token from Authorization header

    Args:
        credentials: HTTP authorization credentials

    Returns:
        dict: Token claims containing uid, email and name

    Raises:
        HTTPException: If the token is missing or verification fails
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        initialize_firebase()
        decoded_token = auth.verify_id_token(credentials.credentials)
    except Exception as e:
        logger.error(f"Token verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.debug(f"Token verified for user: {decoded_token.get('uid')}")
    return {
        'uid': decoded_token.get('uid'),
        'email': decoded_token.get('email', ''),
        'name': decoded_token.get('name', 'User'),
    }


async def get_current_user(
    token_data: dict = Depends(verify_firebase_token),
    store: LedgerStore = Depends(get_ledger_store),
) -> User:
    """
    Resolve the authenticated user's profile, creating it on first sign-in

    Args:
        token_data: Claims from token verification
        store: Ledger store

    Returns:
        User: The acting user
    """
    return AccountService(store).ensure_profile(
        token_data['uid'],
        email=token_data.get('email', ''),
        name=token_data.get('name', ''),
    )


async def verify_admin_access(user: User = Depends(get_current_user)) -> User:
    """
    Verify user has admin privileges

    Args:
        user: The acting user

    Returns:
        User: The acting user if admin access is granted

    Raises:
        HTTPException: If admin access is denied
    """
    if not user.is_admin:
        logger.warning(f"Admin access denied for user: {user.uid}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    logger.info(f"Admin access granted for user: {user.uid}")
    return user
