"""Exception taxonomy shared by the core and the HTTP boundary."""


class ArenaError(Exception):
    status_code = 500
    public_message = "Internal error"
    # When False the detail is only ever logged, never returned to clients
    expose_detail = False

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.public_message)
        self.detail = detail or self.public_message

    @property
    def client_message(self) -> str:
        return self.detail if self.expose_detail else self.public_message


class AuthError(ArenaError):
    """Bad credentials, disabled account or dead session. Always generic."""

    status_code = 401
    public_message = "Invalid credentials"


class RegistrationError(ArenaError):
    status_code = 400
    public_message = "Registration failed"
    expose_detail = True


class ResourceError(ArenaError):
    status_code = 400


class ChallengeNotFound(ResourceError):
    status_code = 404
    public_message = "Challenge not found"


class SandboxNotRequired(ResourceError):
    public_message = "Challenge does not require a sandbox"


class CapacityExceeded(ResourceError):
    status_code = 503
    public_message = "Sandbox capacity reached, try again later."


class SandboxUnavailable(ArenaError):
    """Container runtime failure. `detail` is for logs only."""

    status_code = 503
    public_message = "Sandbox unavailable."


class ConsistencyError(ArenaError):
    """A point award could not be committed after a correct validation."""

    public_message = "Award could not be committed"
