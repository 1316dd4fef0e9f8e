"""
Upstream endpoints and the decoders that turn their responses into payloads.
"""

from .catalog import ENDPOINTS, EndpointSpec, get_endpoint
from .decoders import CSVDecoder, JSONDecoder, SourceDecoder, XLSXDecoder

__all__ = [
    "ENDPOINTS",
    "EndpointSpec",
    "get_endpoint",
    "SourceDecoder",
    "JSONDecoder",
    "CSVDecoder",
    "XLSXDecoder",
]
