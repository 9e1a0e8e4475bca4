import os

CONF_FILE = os.path.expanduser("~/.anonchat.conf")
VERSION = "1.0"

# Remote store
MESSAGES_TABLE = "messages"
BACKFILL_LIMIT = 200
HTTP_TIMEOUT = 15
HEARTBEAT_INTERVAL = 25  # seconds, Realtime drops sockets silent for ~60s
RECONNECT_DELAY = 5
MAX_RETRIES = 3
RETRY_BASE = 1

# Envelope scheme
ENVELOPE_VERSION = "v1"
ENVELOPE_ALG = "AES-GCM"
KDF_ITERATIONS = 120_000
KEY_LEN = 32
NONCE_LEN = 12
SALT_LEN = 16

# Signaling
TYPING_IDLE = 1.5  # seconds without activity before "stopped typing"
TYPING_EVENT = "typing"
ROOM_CLEARED_EVENT = "room_cleared"

# Presentation
MAX_MSG_LEN = 2000
DECRYPT_WORKERS = 8
INVITE_BASE_URL = "https://anonchat.app/"
