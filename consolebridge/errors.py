class BridgeError(Exception):
    pass


class ValidationError(BridgeError):
    """Rejected admin request; nothing was changed."""


class InvalidIndex(ValidationError):
    def __init__(self, index: int, length: int):
        super().__init__(f"Invalid index {index + 1} (have {length}).")
        self.index = index
        self.length = length


class UnknownServer(ValidationError):
    def __init__(self, nickname: str):
        super().__init__(f"Server `{nickname}` not found.")
        self.nickname = nickname


class UnknownCategory(ValidationError):
    def __init__(self, name: str):
        super().__init__(f"Category `{name}` not found.")
        self.name = name


class DuplicateName(ValidationError):
    pass


class InvalidCoordinates(ValidationError):
    def __init__(self, value: str):
        super().__init__(
            f"Invalid coordinates `{value}`. Use (x,y,z) or x,y,z."
        )
        self.value = value


class LinkConflict(ValidationError):
    pass


class NotLinked(ValidationError):
    pass


class ConsoleError(BridgeError):
    def __init__(self, message: str, command: str | None = None):
        super().__init__(message)
        self.command = command


class PositionTimeout(BridgeError):
    def __init__(self, player_name: str, timeout: float):
        super().__init__(f"Position request for {player_name} timed out after {timeout}s")
        self.player_name = player_name
        self.timeout = timeout
