from .checkout import checkout
from .caching import cache
from .shell import sh
from .toolchain import setup

__all__ = ["checkout", "cache", "sh", "setup"]
