"""Translate text and key combinations into X11 keysyms.

Remote desktops speaking RFB identify keys by X11 keysym.  This module
maps characters and symbolic key names to keysyms and expands key
combination strings such as ``"Control+Shift+T"`` into an ordered
press/release sequence.

Mapping rules for characters:

* Latin-1 printable code points map to the keysym of the same value.
* ``"\\n"``/``"\\r"``, ``"\\t"`` and ``"\\b"`` map to Return, Tab and
  BackSpace.
* Every other code point maps to ``0x01000000 | code_point``, the
  X11 Unicode keysym range.

The mapping is deterministic and round-trips ASCII text.
"""

from __future__ import annotations

from rca_agent.core.errors import ValidationError

KEY_BACKSPACE = 0xFF08
KEY_TAB = 0xFF09
KEY_RETURN = 0xFF0D
KEY_ESCAPE = 0xFF1B
KEY_DELETE = 0xFFFF
KEY_SHIFT = 0xFFE1
KEY_CONTROL = 0xFFE3
KEY_META = 0xFFE7
KEY_ALT = 0xFFE9
KEY_SUPER = 0xFFEB

_UNICODE_KEYSYM_BASE = 0x01000000

_NAMED_KEYS: dict[str, int] = {
    "backspace": KEY_BACKSPACE,
    "tab": KEY_TAB,
    "enter": KEY_RETURN,
    "return": KEY_RETURN,
    "escape": KEY_ESCAPE,
    "esc": KEY_ESCAPE,
    "delete": KEY_DELETE,
    "del": KEY_DELETE,
    "space": 0x0020,
    "home": 0xFF50,
    "left": 0xFF51,
    "arrowleft": 0xFF51,
    "up": 0xFF52,
    "arrowup": 0xFF52,
    "right": 0xFF53,
    "arrowright": 0xFF53,
    "down": 0xFF54,
    "arrowdown": 0xFF54,
    "pageup": 0xFF55,
    "page_up": 0xFF55,
    "pagedown": 0xFF56,
    "page_down": 0xFF56,
    "end": 0xFF57,
    "insert": 0xFF63,
    "shift": KEY_SHIFT,
    "control": KEY_CONTROL,
    "ctrl": KEY_CONTROL,
    "alt": KEY_ALT,
    "option": KEY_ALT,
    "meta": KEY_META,
    "super": KEY_SUPER,
    "win": KEY_SUPER,
    "cmd": KEY_SUPER,
    "command": KEY_SUPER,
    "plus": 0x002B,
}
_NAMED_KEYS.update({f"f{n}": 0xFFBD + n for n in range(1, 13)})

_MODIFIERS = frozenset(
    {KEY_SHIFT, KEY_CONTROL, KEY_ALT, KEY_META, KEY_SUPER}
)

_CONTROL_CHARS: dict[str, int] = {
    "\n": KEY_RETURN,
    "\r": KEY_RETURN,
    "\t": KEY_TAB,
    "\b": KEY_BACKSPACE,
}


def char_to_keysym(char: str) -> int:
    """Return the keysym that types *char*.

    Raises:
        ValueError: If *char* is not exactly one character.
    """
    if len(char) != 1:
        raise ValueError(f"expected a single character, got {char!r}")
    if char in _CONTROL_CHARS:
        return _CONTROL_CHARS[char]
    code_point = ord(char)
    if 0x20 <= code_point <= 0x7E or 0xA0 <= code_point <= 0xFF:
        return code_point
    return _UNICODE_KEYSYM_BASE | code_point


def text_to_key_events(text: str) -> list[tuple[int, bool]]:
    """Expand *text* into ``(keysym, pressed)`` pairs, one press and one
    release per character."""
    events: list[tuple[int, bool]] = []
    for char in text:
        keysym = char_to_keysym(char)
        events.append((keysym, True))
        events.append((keysym, False))
    return events


def key_to_keysym(key: str) -> int:
    """Resolve one symbolic key name or single character to a keysym.

    Raises:
        ValidationError: If the name is not recognised.
    """
    normalised = key.strip().lower()
    if normalised in _NAMED_KEYS:
        return _NAMED_KEYS[normalised]
    if len(key.strip()) == 1:
        return char_to_keysym(key.strip())
    raise ValidationError(f"unknown key '{key}'")


def parse_combination(combo: str) -> list[int]:
    """Split a ``"Mod+Mod+Key"`` string into keysyms, in press order.

    A single letter combined with modifiers is sent lower-case so that
    ``"Control+A"`` selects all rather than typing a capital letter.
    A lone ``"+"`` (or ``"Control++"``) names the plus key.

    Raises:
        ValidationError: If the string is empty or contains an unknown
            key.
    """
    stripped = combo.strip()
    if not stripped:
        raise ValidationError("empty key combination")
    if stripped == "+":
        return [key_to_keysym("+")]

    parts = stripped.split("+")
    if stripped.endswith("++"):
        parts = parts[:-2] + ["+"]
    if any(not part.strip() for part in parts):
        raise ValidationError(f"malformed key combination '{combo}'")

    keysyms = [key_to_keysym(part) for part in parts]
    has_modifier = any(k in _MODIFIERS for k in keysyms[:-1])
    last = parts[-1].strip()
    if has_modifier and len(last) == 1 and last.isalpha():
        keysyms[-1] = char_to_keysym(last.lower())
    return keysyms


def combination_to_key_events(combo: str) -> list[tuple[int, bool]]:
    """Expand a key combination into press events in order followed by
    release events in reverse order."""
    keysyms = parse_combination(combo)
    presses = [(k, True) for k in keysyms]
    releases = [(k, False) for k in reversed(keysyms)]
    return presses + releases
