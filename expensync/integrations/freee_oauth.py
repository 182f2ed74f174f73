"""
freee OAuth Integration

Authorization-code flow for connecting the company's freee account.
Admins are redirected to freee's consent page and return to the callback
with a code, which `FreeeClient.exchange_code` turns into tokens.
"""

import os
import secrets
import logging
from typing import Dict, Any, Optional
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass
from urllib.parse import urlencode

logger = logging.getLogger(__name__)

FREEE_AUTH_URL = "https://accounts.secure.freee.co.jp/public_api/authorize"
FREEE_TOKEN_URL = "https://accounts.secure.freee.co.jp/public_api/token"
DEFAULT_FREEE_API_BASE = "https://api.freee.co.jp"

OAUTH_STATE_TTL = timedelta(minutes=10)


# ==================== CONFIGURATION ====================

@dataclass
class FreeeOAuthConfig:
    """OAuth configuration for freee."""
    client_id: str
    client_secret: str
    redirect_uri: str
    authorize_url: str = FREEE_AUTH_URL
    token_url: str = FREEE_TOKEN_URL
    api_base: str = DEFAULT_FREEE_API_BASE


def get_freee_oauth_config() -> FreeeOAuthConfig:
    """Get freee OAuth config from environment."""
    return FreeeOAuthConfig(
        client_id=os.getenv("FREEE_CLIENT_ID", ""),
        client_secret=os.getenv("FREEE_CLIENT_SECRET", ""),
        redirect_uri=os.getenv("FREEE_REDIRECT_URI", "http://localhost:8000/api/freee/callback"),
        api_base=os.getenv("FREEE_API_BASE", DEFAULT_FREEE_API_BASE).rstrip("/"),
    )


# ==================== STATE MANAGEMENT ====================

# In-memory state store for the OAuth round trip (single process)
_oauth_states: Dict[str, Dict[str, Any]] = {}


def create_oauth_state(user_id: str) -> str:
    """Create a one-time state parameter bound to the admin starting the flow."""
    state = secrets.token_urlsafe(32)
    _oauth_states[state] = {
        "user_id": user_id,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    return state


def validate_oauth_state(state: str) -> Optional[Dict[str, Any]]:
    """Validate and consume OAuth state."""
    if state not in _oauth_states:
        return None

    data = _oauth_states.pop(state)

    created = datetime.fromisoformat(data["created_at"])
    if datetime.now(timezone.utc) - created > OAUTH_STATE_TTL:
        return None

    return data


# ==================== AUTHORIZATION URL ====================

def get_freee_auth_url(user_id: str) -> str:
    """Generate the freee authorization URL."""
    config = get_freee_oauth_config()
    params = {
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "prompt": "select_company",
        "state": create_oauth_state(user_id),
    }
    return f"{config.authorize_url}?{urlencode(params)}"
