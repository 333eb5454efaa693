class RoomError(Exception):
    """Base class for every failure the room core reports to its caller."""

    code = "ROOM_ERROR"
    status_code = 400

    def __init__(self, message: str = None):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_detail(self) -> dict:
        return {"error": self.code, "message": self.message}


class RoomNotFound(RoomError):
    code = "ROOM_NOT_FOUND"
    status_code = 404


class RoomExists(RoomError):
    code = "ROOM_EXISTS"
    status_code = 409


class NotEnoughPlayers(RoomError):
    code = "NOT_ENOUGH_PLAYERS"
    status_code = 400


class NotAuthorized(RoomError):
    code = "NOT_AUTHORIZED"
    status_code = 403


class StoreUnavailable(RoomError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
