import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union

logger = logging.getLogger(__name__)


class NavCommand(str, Enum):
    PREVIOUS = "previous"
    NEXT = "next"
    FIRST = "first"
    LAST = "last"


@dataclass(frozen=True)
class JumpTo:
    page: int


Command = Union[NavCommand, JumpTo]


@dataclass(frozen=True)
class KeyPress:
    key: str
    from_text_input: bool = False


@dataclass(frozen=True)
class Wheel:
    delta_y: float


@dataclass(frozen=True)
class JumpRequest:
    """Contents of the page-number box when "Go" is pressed."""

    text: str


InputEvent = Union[KeyPress, Wheel, JumpRequest]

KEYMAP = {
    "ArrowLeft": NavCommand.PREVIOUS,
    "a": NavCommand.PREVIOUS,
    "ArrowRight": NavCommand.NEXT,
    "d": NavCommand.NEXT,
    "Home": NavCommand.FIRST,
    "End": NavCommand.LAST,
}


def parse_page_number(text: str) -> int | None:
    try:
        page = int(text.strip())
    except ValueError:
        return None
    return page if page > 0 else None


def command_for(event: InputEvent, total_known: bool) -> Command | None:
    if isinstance(event, KeyPress):
        if event.from_text_input:
            return None
        command = KEYMAP.get(event.key)
        if command is NavCommand.LAST and not total_known:
            return None
        return command
    if isinstance(event, Wheel):
        if event.delta_y > 0:
            return NavCommand.NEXT
        if event.delta_y < 0:
            return NavCommand.PREVIOUS
        return None
    if isinstance(event, JumpRequest):
        page = parse_page_number(event.text)
        return JumpTo(page) if page is not None else None
    return None


class InputEvents:
    """
    Subscription hub for input events.

    The host shell calls `emit()`; the active viewer subscribes while it has a
    document open and unsubscribes on close.
    """

    def __init__(self):
        self._handlers: list[Callable[[InputEvent], None]] = []

    def __len__(self) -> int:
        return len(self._handlers)

    def subscribe(self, handler: Callable[[InputEvent], None]) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def emit(self, event: InputEvent) -> None:
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Input handler failed for %r", event)
