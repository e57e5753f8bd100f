from loginguard.db.models.block_entry import BlockEntry
from loginguard.db.models.failed_login_counter import FailedLoginCounter
from loginguard.db.models.geo_rule import GeoRule
from loginguard.db.models.known_device import KnownDevice
from loginguard.db.models.login_activity import LoginActivity
from loginguard.db.models.protection_settings import ProtectionSettings
from loginguard.db.models.rate_limit import RateLimitSetting, RateWindow
from loginguard.db.models.recovery_code import RecoveryCode
from loginguard.db.models.verification_challenge import VerificationChallenge

__all__ = [
    "BlockEntry",
    "FailedLoginCounter",
    "GeoRule",
    "KnownDevice",
    "LoginActivity",
    "ProtectionSettings",
    "RateLimitSetting",
    "RateWindow",
    "RecoveryCode",
    "VerificationChallenge",
]
