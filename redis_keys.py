REDIS_META_KEY = "room:{code}" # room code - metadata hash
REDIS_PLAYERS_KEY = "room:{code}:players" # room code - hash of player_id -> player json
REDIS_ROOM_CHANNEL = "room:{code}:channel" # room code - pub/sub channel name
REDIS_INDEX_KEY = "rooms:index" # set of live room codes, reaped lazily
REDIS_STATS_KEY = "stats:{account_ref}" # external account - statistics counters

# **`room:{code}` hash fields**
# - `code` = room code
# - `status` = lobby | in-game | ended
# - `createdAt` = epoch millis, also the creation marker (HSETNX)
# - `lastActivityAt` = epoch millis
