"""
Control protocol codec.

Pure parsing and formatting for the line-based control protocol; no I/O
happens here.

Protocol Format:
    Client -> server: one command per line, ``<verb> [args...]\\n``. The verb
    is case-insensitive. Arguments are separated by whitespace; an argument
    that starts with a single or double quote runs to the matching closing
    quote and may contain spaces.

    Server -> client:
        OK [message]\\n                 - command succeeded
        ERR <message>\\n                - command failed
        OK <w> <h> <n>\\n<n raw bytes>  - screenshot (BGRA)
        OK <CRC32> <w> <h>\\n           - screencrc
        !led <class> <id> <state>\\n    - push event
        !media <class> <id> <state>\\n  - push event
        !paused <0|1>\\n                - push event
"""

from __future__ import annotations

from dataclasses import dataclass

from hostlink.devices.state import LedEvent, MediaEvent, PausedEvent, PushEvent

LINE_TERMINATOR = b"\n"
EVENT_PREFIX = "!"
QUOTE_CHARS = ("'", '"')

# Line bytes are decoded with surrogateescape so non-UTF-8 file names survive
# the round trip to os.fsencode() unchanged.
LINE_ENCODING = "utf-8"
LINE_ERRORS = "surrogateescape"


@dataclass(frozen=True, slots=True)
class Command:
    """A parsed command line."""

    verb: str
    args: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        """Lower-cased verb used for dispatch."""
        return self.verb.lower()

    @property
    def argc(self) -> int:
        return len(self.args)


def tokenize(line: str) -> tuple[str, ...]:
    """
    Split a command line into tokens.

    Rules:
    - Runs of whitespace separate tokens.
    - A token that starts with ``'`` or ``"`` is quoted: it extends to the
      next occurrence of the same quote character, whitespace included, and
      the quotes are dropped. A missing closing quote extends to end of line.
    - Outside single quotes, a backslash makes the next whitespace, quote or
      backslash character literal. Any other backslash is kept as-is.

    Examples:
        >>> tokenize('fddload 0 "My Disk.img" 1')
        ('fddload', '0', 'My Disk.img', '1')
        >>> tokenize(r"fddload 0 My\\ Disk.img 1")
        ('fddload', '0', 'My Disk.img', '1')
    """
    tokens: list[str] = []
    current: list[str] = []
    in_token = False
    quote: str | None = None
    i = 0
    n = len(line)

    while i < n:
        ch = line[i]

        if quote is not None:
            if ch == quote:
                quote = None
            elif ch == "\\" and quote == '"' and i + 1 < n and line[i + 1] in ('"', "\\"):
                i += 1
                current.append(line[i])
            else:
                current.append(ch)
        elif ch.isspace():
            if in_token:
                tokens.append("".join(current))
                current = []
                in_token = False
        elif ch in QUOTE_CHARS and not in_token:
            quote = ch
            in_token = True
        elif ch == "\\" and i + 1 < n and (line[i + 1].isspace() or line[i + 1] in QUOTE_CHARS or line[i + 1] == "\\"):
            i += 1
            current.append(line[i])
            in_token = True
        else:
            current.append(ch)
            in_token = True

        i += 1

    if in_token:
        tokens.append("".join(current))

    return tuple(tokens)


def parse_command(line: str) -> Command | None:
    """
    Parse one protocol line into a Command.

    Args:
        line: Line text without its terminator.

    Returns:
        The parsed command, or None for an empty or blank line.
    """
    tokens = tokenize(line.rstrip("\r"))
    if not tokens:
        return None
    return Command(verb=tokens[0], args=tokens[1:])


def decode_line(raw: bytes) -> str:
    """Decode a raw line, dropping a trailing carriage return."""
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return raw.decode(LINE_ENCODING, LINE_ERRORS)


def encode_line(text: str) -> bytes:
    """Encode one protocol line and append the terminator."""
    return text.encode(LINE_ENCODING, LINE_ERRORS) + LINE_TERMINATOR


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------


def format_ok(message: str = "") -> bytes:
    """``OK`` or ``OK <message>``."""
    return encode_line(f"OK {message}" if message else "OK")


def format_err(message: str) -> bytes:
    """``ERR <message>``."""
    return encode_line(f"ERR {message}" if message else "ERR")


def format_screenshot_header(width: int, height: int, byte_count: int) -> bytes:
    """Header line that precedes exactly ``byte_count`` raw BGRA bytes."""
    return format_ok(f"{width} {height} {byte_count}")


def format_crc(crc: int, width: int, height: int) -> bytes:
    """CRC reply: upper-case, zero-padded 8-digit hex and full visible size."""
    return format_ok(f"{crc & 0xFFFFFFFF:08X} {width} {height}")


# -----------------------------------------------------------------------------
# Push events
# -----------------------------------------------------------------------------


def format_event(event: PushEvent) -> bytes:
    """
    Encode a push event as a ``!``-prefixed line.

    Args:
        event: LED, media or pause event.

    Returns:
        The encoded line including its terminator.
    """
    if isinstance(event, LedEvent):
        text = f"led {event.device_class.value} {event.slot} {event.state.value}"
    elif isinstance(event, MediaEvent):
        text = f"media {event.device_class.value} {event.slot} {event.state.value}"
    elif isinstance(event, PausedEvent):
        text = f"paused {1 if event.paused else 0}"
    else:
        raise TypeError(f"Not a push event: {event!r}")

    return encode_line(EVENT_PREFIX + text)
