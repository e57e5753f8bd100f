class LoginProtectionError(Exception):
    pass


class PolicyBlock(LoginProtectionError):
    def __init__(self, reason: str, *, retry_after: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.retry_after = retry_after


class TransientStoreError(LoginProtectionError):
    def __init__(self, component: str, message: str = "store unavailable") -> None:
        super().__init__(f"{component}: {message}")
        self.component = component


class ChallengeExpired(LoginProtectionError):
    pass


class RetryExhausted(LoginProtectionError):
    pass
