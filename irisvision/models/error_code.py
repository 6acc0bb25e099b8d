from enum import Enum


class ErrorCode(str, Enum):
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    TRANSIENT_NETWORK = "TRANSIENT_NETWORK"
    SCHEMA_VALIDATION = "SCHEMA_VALIDATION"
    STORE_WRITE_FAILURE = "STORE_WRITE_FAILURE"
    BAD_REQUEST = "BAD_REQUEST"
    UNAUTHORIZED = "UNAUTHORIZED"
    UPGRADE_REQUIRED = "UPGRADE_REQUIRED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    TOO_MANY_REQUESTS = "TOO_MANY_REQUESTS"
    PAYMENT_INVALID = "PAYMENT_INVALID"


__all__ = ["ErrorCode"]
