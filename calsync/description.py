from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from calsync.models import Event

# Changing this invalidates every description already written to a calendar.
DEFAULT_DELIMITER = "===================="


@dataclass(frozen=True)
class Description:
    """An event description split at the delimiter line.

    ``annotation`` is text a person wrote above the delimiter and is never
    overwritten. ``managed`` is everything below it and always mirrors the
    source event.
    """

    annotation: str = ""
    managed: str = ""


class DescriptionCodec:
    def __init__(self, delimiter: str = DEFAULT_DELIMITER) -> None:
        if not delimiter:
            raise ValueError("description delimiter must not be empty")
        self.delimiter = delimiter

    def parse(self, text: str | None) -> Description:
        text = text or ""
        parts = text.split(self.delimiter, 1)
        if len(parts) < 2:
            return Description(annotation="", managed=text)
        prefix, suffix = parts
        # serialize() puts one newline on each side of the delimiter.
        if prefix.endswith("\n"):
            prefix = prefix[:-1]
        if suffix.startswith("\n"):
            suffix = suffix[1:]
        return Description(annotation=prefix, managed=suffix)

    def serialize(self, description: Description) -> str:
        if not description.annotation:
            return f"{self.delimiter}\n{description.managed}"
        return f"{description.annotation}\n{self.delimiter}\n{description.managed}"

    def export_description(self, event: "Event") -> str:
        """Return the description to store remotely, delimiter included."""
        return self.serialize(self.parse(event.description))

    def managed_text(self, text: str | None) -> str:
        return self.parse(text).managed

    def merge(self, remote_text: str | None, managed: str) -> str:
        annotation = self.parse(remote_text).annotation
        return self.serialize(Description(annotation=annotation, managed=managed))


DEFAULT_CODEC = DescriptionCodec()
