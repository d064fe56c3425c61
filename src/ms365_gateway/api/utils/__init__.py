"""API utility modules."""

from ms365_gateway.api.utils.cancellation import run_auth_flow, run_request_bound

__all__ = [
    "run_auth_flow",
    "run_request_bound",
]
