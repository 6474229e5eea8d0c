# Fake implementations for testing

from .fake_http import FakeHTTPServer, FailingStream, StallingStream

__all__ = ["FakeHTTPServer", "FailingStream", "StallingStream"]
