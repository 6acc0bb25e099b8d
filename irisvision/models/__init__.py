from .base import Base
from .entitlement import Entitlement
from .scan_history import ScanHistory
from .applied_op import AppliedOp
from .device_state import DeviceState
from .error_code import ErrorCode

__all__ = [
    "Base",
    "Entitlement",
    "ScanHistory",
    "AppliedOp",
    "DeviceState",
    "ErrorCode",
]
