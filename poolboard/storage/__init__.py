from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .participants import ParticipantRepo, RegistrationThrottled
from .watermarks import MAX_LIMIT, MAX_USERS_PER_BLOCK, WatermarkRepo, clamp_limit
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "MAX_LIMIT",
    "MAX_USERS_PER_BLOCK",
    "ParticipantRepo",
    "RegistrationThrottled",
    "WatermarkRepo",
    "StorageManager",
    "clamp_limit",
]
