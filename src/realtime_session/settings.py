"""
Realtime Session Settings
=========================

Environment-driven defaults for the realtime connection, audio and relay.
Values are read once at import time; a local ``.env`` file is honored.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# ==============================================================================
# CONNECTION
# ==============================================================================

REALTIME_URL: str = os.getenv("REALTIME_URL", "wss://api.openai.com/v1/realtime")
REALTIME_MODEL: str = os.getenv("REALTIME_MODEL", "gpt-4o-realtime-preview-2024-10-01")
OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")

# Azure OpenAI deployments take precedence when an endpoint is configured
AZURE_OPENAI_ENDPOINT: str = os.getenv("AZURE_OPENAI_ENDPOINT", "")
AZURE_OPENAI_API_KEY: str = os.getenv("AZURE_OPENAI_API_KEY", "")
AZURE_OPENAI_DEPLOYMENT: str = os.getenv("AZURE_OPENAI_DEPLOYMENT", "")
AZURE_OPENAI_API_VERSION: str = os.getenv("AZURE_OPENAI_API_VERSION", "2024-10-01-preview")

# header | subprotocol | query
REALTIME_AUTH_MODE: str = os.getenv("REALTIME_AUTH_MODE", "header")
REALTIME_BETA_HEADER: str = "realtime=v1"
REALTIME_BETA_SUBPROTOCOL: str = "openai-beta.realtime-v1"

REALTIME_OPEN_TIMEOUT: float = float(os.getenv("REALTIME_OPEN_TIMEOUT", "10.0"))

# ==============================================================================
# AUDIO
# ==============================================================================

DEFAULT_SAMPLE_RATE: int = int(os.getenv("REALTIME_SAMPLE_RATE", "24000"))

# ==============================================================================
# SESSION / RELAY
# ==============================================================================

REALTIME_SESSION_CONFIG: str = os.getenv("REALTIME_SESSION_CONFIG", "")

REALTIME_RELAY_HOST: str = os.getenv("REALTIME_RELAY_HOST", "0.0.0.0")
REALTIME_RELAY_PORT: int = int(os.getenv("REALTIME_RELAY_PORT", os.getenv("PORT", "8081")))
