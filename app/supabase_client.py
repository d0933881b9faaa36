import logging
import os
from typing import Optional

from dotenv import load_dotenv
from jose import jwt, JWTError
from supabase import create_client, Client

load_dotenv()

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get("SUPABASE_URL")
SUPABASE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")  # Use service role for backend
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY")

if not SUPABASE_URL:
    logger.warning("SUPABASE_URL not set. Supabase features will be disabled.")
    supabase: Client | None = None
else:
    key_to_use = SUPABASE_KEY or SUPABASE_ANON_KEY
    if key_to_use:
        supabase = create_client(SUPABASE_URL, key_to_use)
    else:
        logger.warning("No Supabase key found. Supabase features will be disabled.")
        supabase = None


def get_supabase() -> Client | None:
    """Get the shared Supabase client instance."""
    return supabase


def verify_supabase_token(token: str) -> Optional[dict]:
    """
    Decode a Supabase JWT and return the user data.
    Returns None if the token cannot be decoded or has no subject.
    """
    if not token:
        return None

    try:
        decoded = jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.info(f"[Auth] JWT decode error: {e}")
        return None

    user_id = decoded.get("sub")
    if not user_id:
        logger.info("[Auth] No user_id (sub) in decoded token")
        return None

    return {
        "id": user_id,
        "email": decoded.get("email"),
        "role": decoded.get("role", "authenticated"),
    }


def get_user_profile(user_id: str) -> dict | None:
    """Get user profile from Supabase."""
    if not supabase:
        return None

    try:
        response = supabase.table("profiles").select("*").eq("id", user_id).single().execute()
        return response.data
    except Exception as e:
        logger.error(f"Error fetching profile for {user_id}: {e}")
        return None
