"""Integration test harness: in-process router, synthetic request scope, HTML assertions."""

from app.erp.itf.environment import TestContext, TestEnvironment
from app.erp.itf.response import HTML, Element, Response
from app.erp.itf.suite import MultipartData, Request, Suite

__all__ = [
    "HTML",
    "Element",
    "MultipartData",
    "Request",
    "Response",
    "Suite",
    "TestContext",
    "TestEnvironment",
]
