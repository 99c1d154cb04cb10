"""dnsswitch package"""

import importlib.metadata as importlib_metadata

try:
    __version__ = importlib_metadata.version("dnsswitch")
except importlib_metadata.PackageNotFoundError:  # pragma: no cover - running from a source tree
    __version__ = "0.0.0"
