class VarnishConfError(Exception):
    pass


class ConfigError(VarnishConfError):
    pass


class AdminError(VarnishConfError):
    pass


class TransportError(AdminError):
    pass


class AuthenticationError(TransportError):
    def __init__(self, status: int, message: str = "Authentication Failed") -> None:
        super().__init__(f"{message} (status {status})")
        self.status = status


class ParallelRequestError(AdminError):
    def __init__(self) -> None:
        super().__init__("Parallel requests are not supported")


class CommandError(AdminError):
    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class ReloadStepError(VarnishConfError):
    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"Failed while {step}: {cause}")
        self.step = step
        self.cause = cause
