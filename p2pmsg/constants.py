# p2pmsg protocol and storage constants

APP_ID = "p2pmsg-v1"

P2P_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_TS = 2
K_SENDER = 3
K_BODY = 4

# Payload types
T_HELLO = 1
T_HELLO_ACK = 2

T_CHAT = 20

# Local state
SCHEMA_VERSION = 2

STORAGE_KEY_ROOMS = "rooms"
STORAGE_KEY_MESSAGES = "messages"
STORAGE_KEY_PROFILE = "profile"
STORAGE_KEY_ACTIVE = "active"

HISTORY_CAP = 50

# Chat text limit (UTF-8 bytes) and the largest payload a peer will accept.
CHAT_MAX_BYTES = 16 * 1024
PAYLOAD_MAX_BYTES = 32 * 1024

PERSONAL_ROOM_ID = "saved-messages"
PERSONAL_ROOM_NAME = "Saved Messages"

ROOM_ID_MAX_CHARS = 30
HANDLE_MIN_CHARS = 2
HANDLE_MAX_CHARS = 20
