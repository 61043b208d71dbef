from __future__ import annotations

import enum


class InvalidLanguage(ValueError):
    pass


class UILanguage(str, enum.Enum):
    EN = "en"
    RU = "ru"
    UZ = "uz"

    @classmethod
    def parse(cls, value: str | None) -> "UILanguage":
        raw = (value or "").strip().lower()
        for lang in cls:
            if lang.value == raw:
                return lang
        raise InvalidLanguage(f"invalid language: {value!r}")

    @classmethod
    def choices(cls) -> list[str]:
        return [lang.value for lang in cls]
