# enrd protocol constants (numeric envelope keys, frame types, event names)

ENRD_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_EVENT = 5
K_BODY = 6

# Frame types
T_HELLO = 1
T_WELCOME = 2

T_EVENT = 20
T_ACK = 21

T_PING = 30
T_PONG = 31

T_ERROR = 40

# HELLO body keys (string keys; the body is a claim map)
B_HELLO_KIND = "kind"
B_HELLO_NAME = "name"
B_HELLO_ID = "id"
B_HELLO_STATE = "state"

# Identity kinds
KIND_ROOM = "room"
KIND_VISITOR = "visitor"
KIND_ADMIN = "admin"
IDENTITY_KINDS = (KIND_ROOM, KIND_VISITOR, KIND_ADMIN)

# Room state carried in a resuming HELLO
STATE_OPENED = "Opened"

# Pending entry kinds
PENDING_ROOM_WARNING = "room_warning"
PENDING_VISITOR_ALERT = "visitor_alert"

# Routing result tags
R_WARNED = "WARNED"
R_PENDING = "PENDING"
R_ALERTED = "ALERTED"

# Inbound protocol events
E_OPEN_ROOM = "openRoom"
E_CLOSE_ROOM = "closeRoom"
E_ENTER_ROOM = "enterRoom"
E_LEAVE_ROOM = "leaveRoom"
E_EXPOSURE_WARNING = "exposureWarning"
E_ALERT_VISITOR = "alertVisitor"

# Diagnostic/admin queries
E_EXPOSE_ALL_CONNECTIONS = "exposeAllSockets"
E_EXPOSE_OPEN_ROOMS = "exposeOpenRooms"
E_EXPOSE_PENDING = "exposePendingWarnings"
E_EXPOSE_AVAILABLE_ROOMS = "exposeAvailableRooms"
E_EXPOSE_VISITORS = "exposeVisitorsRooms"
E_EXPOSE_STATS = "exposeStats"
E_PING_SERVER = "pingServer"
E_DISCONNECT_ALL = "disconnectAll"

# Outbound protocol events
O_CHECK_IN = "checkIn"
O_CHECK_OUT = "checkOut"
O_NOTIFY_ROOM = "notifyRoom"
O_EXPOSURE_ALERT = "exposureAlert"
O_OPEN_ROOMS_EXPOSED = "openRoomsExposed"
O_AVAILABLE_ROOMS_EXPOSED = "availableRoomsExposed"
O_UPDATED_OCCUPANCY = "updatedOccupancy"

# Name policy
NAME_MAX_CHARS = 64
