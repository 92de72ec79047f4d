"""Mock HTTP dispatch engine used to intercept outbound workflow calls."""

from .dispatcher import MockDispatcher, PendingRule
from .exceptions import MockConfigurationError, SimulatedTransportError
from .matchers import ACTION_NAME_HEADER, MatchRule, PathMatchType, RequestMatcher, RequestPredicate
from .models import CallContext, MockRequest, MockResponse, RecordedCall, TransportFailure
from .responses import ResponseBuilder, ResponsePlan
from .server import MockHttpHost

__all__ = [
    "ACTION_NAME_HEADER",
    "CallContext",
    "MatchRule",
    "MockConfigurationError",
    "MockDispatcher",
    "MockHttpHost",
    "MockRequest",
    "MockResponse",
    "PathMatchType",
    "PendingRule",
    "RecordedCall",
    "RequestMatcher",
    "RequestPredicate",
    "ResponseBuilder",
    "ResponsePlan",
    "SimulatedTransportError",
    "TransportFailure",
]
