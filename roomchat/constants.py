"""Room chat protocol constants (wire field names, endpoints and limits).

Room Chat Protocol
==================

A room session speaks to the backend over two channels:

    - A WebSocket at ``/rooms/{room_id}``. The first outbound frame is the raw
      bearer token. Inbound frames are either a bare string (system notice) or
      a JSON object (text or image message). Outbound chat frames are raw text.
    - Plain HTTP for history replay, image download and image upload, all
      authenticated with ``Authorization: Bearer <token>``.

Field names below are the JSON keys the backend uses in both channels.
"""

# ============================================================================
# Message Fields
# ============================================================================

F_USERNAME = "username"  # Sender username (str)
F_CONTENT = "content"  # Message text, or caption for image messages (str)
F_CREATED_AT = "createdAt"  # Server timestamp (ISO-8601 str or epoch number) - OPTIONAL
F_MESSAGE_TYPE = "messageType"  # One of MESSAGE_TYPE_* - OPTIONAL, text when absent
F_IMAGE_PATH = "imagePath"  # Server-side image reference - present for image messages

MESSAGE_TYPE_TEXT = "text"
MESSAGE_TYPE_IMAGE = "image"

# ============================================================================
# HTTP Endpoints
# ============================================================================

PATH_LOGIN = "/login"  # POST {username, password} -> {token}
PATH_SIGNUP = "/signup"  # POST {username, password} -> {token}
PATH_ROOMS = "/rooms"  # GET -> {room_id: {name}, ...}
PATH_ROOM_CREATE = "/rooms/create"  # POST {name}
PATH_ROOM = "/rooms/{room_id}"  # DELETE; also the WebSocket path
PATH_ROOM_MESSAGES = "/rooms/{room_id}/messages"  # GET -> JSON array (maybe double-encoded)
PATH_ROOM_IMAGE = "/rooms/{room_id}/image"  # POST multipart
PATH_IMAGE = "/images/{name}"  # GET -> raw image bytes

# Multipart form fields for image upload
FORM_CHAT_IMAGE = "chatImage"
FORM_CONTENT = "content"

F_TOKEN = "token"  # Login/signup response field
F_ROOM_NAME = "name"  # Room create request/listing field

# ============================================================================
# WebSocket Close Codes
# ============================================================================

# Codes the backend uses when it refuses the bearer token. Any other close
# the caller did not ask for is treated as a lost connection.
WS_CLOSE_POLICY_VIOLATION = 1008
WS_AUTH_REJECTED_CODES = frozenset({WS_CLOSE_POLICY_VIOLATION, 4001, 4401, 4403})

# ============================================================================
# Limits and Defaults
# ============================================================================

MAX_FRAME_SIZE = 1024 * 512  # Largest inbound text frame accepted
MAX_HISTORY_SIZE = 1024 * 1024 * 8  # Largest history response body accepted
MAX_IMAGE_BYTES = 1024 * 1024 * 10
MAX_TIMELINE_ENTRIES = 1000
MAX_ROOM_ID_LENGTH = 128
MAX_MESSAGE_LENGTH = 4096

DEFAULT_CONNECT_TIMEOUT_S = 10.0
DEFAULT_CREDENTIAL_TIMEOUT_S = 5.0
DEFAULT_HISTORY_TIMEOUT_S = 15.0
DEFAULT_IMAGE_TIMEOUT_S = 20.0
DEFAULT_SEND_TIMEOUT_S = 30.0
DEFAULT_HEARTBEAT_S = 30.0

DEFAULT_IMAGE_FILENAME = "image.jpg"
DEFAULT_IMAGE_CONTENT_TYPE = "image/jpeg"
