"""
Assertions over harness responses.

Assertion helpers raise AssertionError (with the response body for context)
and return self so they can be chained.
"""
from __future__ import annotations

import json
from typing import Any

from parsel import Selector, SelectorList
from werkzeug.http import parse_cookie
from werkzeug.test import TestResponse

FIELD_ERROR_XPATH = "//small[@data-testid='field-error' and @data-field-id='{field_id}']"


class Response:
    def __init__(self, raw: TestResponse) -> None:
        self.raw = raw
        self._html: HTML | None = None

    @property
    def body(self) -> str:
        return self.raw.get_data(as_text=True)

    @property
    def status_code(self) -> int:
        return self.raw.status_code

    def status(self, code: int) -> "Response":
        __tracebackhide__ = True
        if self.raw.status_code != code:
            raise AssertionError(f"Unexpected status code {self.raw.status_code}, expected {code}. Body: {self.body}")
        return self

    def redirect_to(self, location: str) -> "Response":
        __tracebackhide__ = True
        actual = self.raw.headers.get("Location")
        if actual != location:
            raise AssertionError(f"Expected redirect to {location!r}, got {actual!r}")
        return self

    def contains(self, text: str) -> "Response":
        __tracebackhide__ = True
        if text not in self.body:
            raise AssertionError(f"{text!r} not found in body: {self.body}")
        return self

    def not_contains(self, text: str) -> "Response":
        __tracebackhide__ = True
        if text in self.body:
            raise AssertionError(f"{text!r} unexpectedly found in body: {self.body}")
        return self

    def header(self, key: str) -> str:
        return self.raw.headers.get(key, "")

    def cookies(self) -> dict[str, str]:
        """Cookies set by the response (name -> value)."""
        out: dict[str, str] = {}
        for raw in self.raw.headers.getlist("Set-Cookie"):
            out.update(parse_cookie(raw.split(";", 1)[0]))
        return out

    def json(self) -> Any:
        __tracebackhide__ = True
        try:
            return json.loads(self.body)
        except ValueError as e:
            raise AssertionError(f"Response body is not JSON ({e}): {self.body}") from e

    def html(self) -> "HTML":
        if self._html is None:
            self._html = HTML(Selector(text=self.body))
        return self._html


class HTML:
    def __init__(self, selector: Selector) -> None:
        self.selector = selector

    def element(self, xpath: str) -> "Element":
        return Element(self.selector.xpath(xpath)[:1], xpath)

    def elements(self, xpath: str) -> list["Element"]:
        return [Element(SelectorList([node]), xpath) for node in self.selector.xpath(xpath)]

    def has_error_for(self, field_id: str) -> bool:
        return bool(self.selector.xpath(FIELD_ERROR_XPATH.format(field_id=field_id)))


class Element:
    def __init__(self, nodes: SelectorList, xpath: str) -> None:
        self.nodes = nodes
        self.xpath = xpath

    @property
    def found(self) -> bool:
        return bool(self.nodes)

    def exists(self) -> "Element":
        __tracebackhide__ = True
        if not self.nodes:
            raise AssertionError(f"Element not found: {self.xpath}")
        return self

    def not_exists(self) -> "Element":
        __tracebackhide__ = True
        if self.nodes:
            raise AssertionError(f"Element should not exist: {self.xpath}")
        return self

    def text(self) -> str:
        """Concatenated text of the element and its descendants; empty when not found."""
        if not self.nodes:
            return ""
        return "".join(self.nodes[0].xpath(".//text()").getall())

    def attr(self, name: str) -> str:
        if not self.nodes:
            return ""
        return self.nodes[0].attrib.get(name, "")
