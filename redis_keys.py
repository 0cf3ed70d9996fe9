REDIS_ROOM_KEY = "room:meta:{room_id}"  # hash - room record
REDIS_ROOM_TOKEN_KEY = "room:token:{token}"  # string - room token -> room id, set with NX
REDIS_ROOM_SESSIONS_KEY = "room:sessions:{room_id}"  # set of session ids
REDIS_ROOM_NICKNAMES_KEY = "room:nicknames:{room_id}"  # hash - lowercased nickname -> session id
REDIS_ROOM_MESSAGES_KEY = "room:messages:{room_id}"  # zset - message id scored by created_at
REDIS_ROOMS_BY_EXPIRY = "rooms:expiry"  # zset - room id scored by expires_at
REDIS_PUBLIC_ROOMS = "rooms:public"  # zset - public room id scored by created_at

REDIS_SESSION_KEY = "session:{session_id}"  # hash - session record
REDIS_SESSION_TOKEN_KEY = "session:token:{token}"  # string - session token -> session id
REDIS_SESSION_MESSAGES_KEY = "session:messages:{session_id}"  # zset - message id scored by created_at
REDIS_SESSIONS_BY_ACTIVITY = "sessions:activity"  # zset - session id scored by last_active_at

REDIS_MESSAGE_KEY = "message:{message_id}"  # hash - message record, attachments as json

# **Timestamps**
# - hashes store ISO-8601 UTC strings
# - sorted set scores are POSIX seconds so range queries stay server side
