"""
Business codes shared by domain, core and API layers.

Generic codes live here; payment lifecycle codes are in
`shared.codes.payment_codes`. The HTTP status for each code is decided in
core.exceptions.
"""
from enum import IntEnum


class BusinessCode(IntEnum):

    SUCCESS = 0

    # Request validation (1xxxx)
    PARAM_ERROR = 10000
    PARAM_VALIDATION_ERROR = 10003

    # Generic business errors (2xxxx)
    BUSINESS_ERROR = 20000
    TOKEN_INVALID = 20004
    TOKEN_EXPIRED = 20005
    NOT_FOUND = 20006
    CONFLICT = 20007

    # Authorization (3xxxx)
    UNAUTHORIZED = 30001
    FORBIDDEN = 30002

    # System (4xxxx)
    SYSTEM_ERROR = 40000
    SERVICE_UNAVAILABLE = 40003

    # Throttling (5xxxx)
    TOO_MANY_REQUESTS = 50001


__all__ = ["BusinessCode"]
