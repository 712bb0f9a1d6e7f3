import asyncio
import sys
from pathlib import Path

# Add project root to Python path
sys.path.append(str(Path(__file__).parent.parent))

from api.services.sessions import SessionService
from lib.config import get_settings
from lib.database import SupabaseDatabase

async def clear_expired_sessions() -> int:
    """Delete sessions that have been idle longer than the session timeout"""
    settings = get_settings()
    if not settings.supabase_configured:
        raise RuntimeError("SUPABASE_URL and SUPABASE_KEY must be set")

    sessions = SessionService(
        SupabaseDatabase.from_settings(settings),
        timeout_minutes=settings.session_timeout_minutes
    )
    return await sessions.clear_expired_sessions()

if __name__ == "__main__":
    try:
        deleted = asyncio.run(clear_expired_sessions())
        print(f"Deleted {deleted} expired sessions")
    except Exception as e:
        print(f"Error clearing sessions: {str(e)}")
        raise
