"""Central constants for the Kaleidoplan playback layer.

Only put small, stable primitives here – avoid runtime/config dependent values.
"""

ACCOUNTS_BASE_URL = "https://accounts.spotify.com"
AUTHORIZE_URL = f"{ACCOUNTS_BASE_URL}/authorize"
TOKEN_URL = f"{ACCOUNTS_BASE_URL}/api/token"
API_BASE_URL = "https://api.spotify.com/v1"

# Scopes requested for user sign-in (web player + catalog + playback control)
USER_SCOPES = (
    "user-read-private",
    "user-read-email",
    "playlist-read-private",
    "streaming",
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-library-read",
)

# Persisted token keys
KEY_ACCESS_TOKEN = "spotify_access_token"
KEY_REFRESH_TOKEN = "spotify_refresh_token"
KEY_EXPIRES_AT = "spotify_expires_at"
KEY_USER_AUTHENTICATED = "spotify_user_authenticated"
KEY_AUTH_STATE = "spotify_auth_state"

# Resolver sentinels
DEVICE = "device"
ADVANCE = "ADVANCE"

NO_PLAYABLE_TRACK = "no playable track"

# Tokens are treated as expired this long before their real expiry
TOKEN_EXPIRY_MARGIN_MS = 60 * 1000
