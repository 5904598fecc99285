"""Transport layer: line-oriented TCP connection and cancellation."""

from .cancel import CancelToken
from .tcp_connection import LineConnection
