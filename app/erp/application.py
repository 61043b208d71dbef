"""
Application registry: the modules an app is built from, their controllers,
and the message bundle used for localization.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Protocol

from flask import Flask

# Key of the Application in Flask's app.extensions.
EXTENSION_KEY = "erp.application"


class Controller(Protocol):
    def register(self, router: Flask) -> None: ...


class Module:
    """Base class for feature modules. Subclasses set name/messages and list controllers."""

    name: str = ""
    # locale -> message key -> text
    messages: Mapping[str, Mapping[str, str]] = {}

    def controllers(self) -> list[Controller]:
        return []


class Bundle:
    def __init__(self, default_locale: str = "en") -> None:
        self.default_locale = default_locale
        self._messages: dict[str, dict[str, str]] = {}

    def add_messages(self, locale: str, messages: Mapping[str, str]) -> None:
        self._messages.setdefault(locale, {}).update(messages)

    def locales(self) -> list[str]:
        locales = list(self._messages)
        if self.default_locale not in locales:
            locales.insert(0, self.default_locale)
        return locales

    def message(self, locale: str, key: str) -> str | None:
        return self._messages.get(locale, {}).get(key)


class Localizer:
    def __init__(self, bundle: Bundle, locale: str) -> None:
        self.bundle = bundle
        self.locale = locale

    def t(self, key: str, **params: object) -> str:
        """Message for key in this locale, falling back to the default locale, then the key itself."""
        text = self.bundle.message(self.locale, key)
        if text is None:
            text = self.bundle.message(self.bundle.default_locale, key)
        if text is None:
            return key
        return text.format(**params) if params else text


class Application:
    def __init__(self, modules: Iterable[Module] = (), *, default_locale: str = "en") -> None:
        self.default_locale = default_locale
        self._modules: list[Module] = []
        self._bundle: Bundle | None = None
        for m in modules:
            self.register_module(m)

    @property
    def modules(self) -> list[Module]:
        return list(self._modules)

    def register_module(self, module: Module) -> None:
        self._modules.append(module)
        self._bundle = None

    def bundle(self) -> Bundle:
        if self._bundle is None:
            bundle = Bundle(self.default_locale)
            for m in self._modules:
                for locale, messages in m.messages.items():
                    bundle.add_messages(locale, messages)
            self._bundle = bundle
        return self._bundle

    def localizer(self, locale: str) -> Localizer:
        return Localizer(self.bundle(), locale)

    def controllers(self) -> list[Controller]:
        out: list[Controller] = []
        for m in self._modules:
            out.extend(m.controllers())
        return out

    def register_controllers(self, router: Flask) -> None:
        for controller in self.controllers():
            controller.register(router)
