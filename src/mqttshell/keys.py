"""Keyboard encoding for the Controller.

Maps key identities to the byte sequences an xterm-compatible terminal sends,
and normalizes raw local terminal input before it goes on the input channel.
"""

from __future__ import annotations

from enum import Enum

ESC = b"\x1b"

# Ctrl+Q detaches the Controller and is never forwarded.
DETACH_BYTE = 0x11


class Key(Enum):
    UP = "up"
    DOWN = "down"
    RIGHT = "right"
    LEFT = "left"
    HOME = "home"
    END = "end"
    PAGE_UP = "page_up"
    PAGE_DOWN = "page_down"
    INSERT = "insert"
    DELETE = "delete"
    F1 = "f1"
    F2 = "f2"
    F3 = "f3"
    F4 = "f4"
    F5 = "f5"
    F6 = "f6"
    F7 = "f7"
    F8 = "f8"
    F9 = "f9"
    F10 = "f10"
    F11 = "f11"
    F12 = "f12"
    ENTER = "enter"
    TAB = "tab"
    BACK_TAB = "back_tab"
    BACKSPACE = "backspace"
    ESCAPE = "escape"


KEY_SEQUENCES: dict[Key, bytes] = {
    Key.UP: b"\x1b[A",
    Key.DOWN: b"\x1b[B",
    Key.RIGHT: b"\x1b[C",
    Key.LEFT: b"\x1b[D",
    Key.HOME: b"\x1b[H",
    Key.END: b"\x1b[F",
    Key.PAGE_UP: b"\x1b[5~",
    Key.PAGE_DOWN: b"\x1b[6~",
    Key.INSERT: b"\x1b[2~",
    Key.DELETE: b"\x1b[3~",
    Key.F1: b"\x1bOP",
    Key.F2: b"\x1bOQ",
    Key.F3: b"\x1bOR",
    Key.F4: b"\x1bOS",
    Key.F5: b"\x1b[15~",
    Key.F6: b"\x1b[17~",
    Key.F7: b"\x1b[18~",
    Key.F8: b"\x1b[19~",
    Key.F9: b"\x1b[20~",
    Key.F10: b"\x1b[21~",
    Key.F11: b"\x1b[23~",
    Key.F12: b"\x1b[24~",
    Key.ENTER: b"\r",
    Key.TAB: b"\t",
    Key.BACK_TAB: b"\x1b[Z",
    Key.BACKSPACE: b"\x7f",
    Key.ESCAPE: ESC,
}

# Other encodings of the same keys that local terminals emit (application
# cursor mode, rxvt, the Linux console). Recognized on input only.
_ALTERNATE_SEQUENCES: dict[bytes, Key] = {
    b"\x1bOA": Key.UP,
    b"\x1bOB": Key.DOWN,
    b"\x1bOC": Key.RIGHT,
    b"\x1bOD": Key.LEFT,
    b"\x1bOH": Key.HOME,
    b"\x1bOF": Key.END,
    b"\x1b[1~": Key.HOME,
    b"\x1b[7~": Key.HOME,
    b"\x1b[4~": Key.END,
    b"\x1b[8~": Key.END,
    b"\x1b[11~": Key.F1,
    b"\x1b[12~": Key.F2,
    b"\x1b[13~": Key.F3,
    b"\x1b[14~": Key.F4,
    b"\x1b[[A": Key.F1,
    b"\x1b[[B": Key.F2,
    b"\x1b[[C": Key.F3,
    b"\x1b[[D": Key.F4,
    b"\x1b[[E": Key.F5,
}

_ESCAPE_SEQUENCES: dict[bytes, Key] = {
    **{seq: key for key, seq in KEY_SEQUENCES.items() if len(seq) > 1},
    **_ALTERNATE_SEQUENCES,
}
_LONGEST_SEQUENCE = max(len(seq) for seq in _ESCAPE_SEQUENCES)

_CTRL_SYMBOLS = "@[\\]^_"


def _ctrl_byte(char: str) -> int:
    if char == " ":
        return 0x00
    upper = char.upper()
    if len(upper) != 1 or not ("A" <= upper <= "Z" or upper in _CTRL_SYMBOLS):
        raise ValueError(f"No control code for Ctrl+{char!r}")
    code = ord(upper) & 0x1F
    if code == DETACH_BYTE:
        raise ValueError("Ctrl+Q is reserved for detaching")
    return code


def encode_key(key: Key | str, *, ctrl: bool = False) -> bytes:
    """Encode a key press as terminal input bytes.

    Args:
        key: A special ``Key`` or a single printable character.
        ctrl: Whether Ctrl is held. Only valid with a character.

    Returns:
        The byte sequence a terminal application expects for this key.

    Raises:
        ValueError: For Ctrl with a special key or a character that has no
            control code, for the reserved Ctrl+Q, or for multi-character input.
    """
    if isinstance(key, Key):
        if ctrl:
            raise ValueError(f"Ctrl+{key.name} has no standard encoding")
        return KEY_SEQUENCES[key]
    if len(key) != 1:
        raise ValueError(f"Expected a single character, got {key!r}")
    if ctrl:
        return bytes([_ctrl_byte(key)])
    return key.encode("utf-8")


def _control_key(byte: int) -> Key | None:
    if byte == 0x0D:
        return Key.ENTER
    if byte == 0x09:
        return Key.TAB
    if byte == 0x7F:
        return Key.BACKSPACE
    if byte == 0x1B:
        return Key.ESCAPE
    return None


def _match_escape(data: bytes, pos: int) -> tuple[Key, int] | None:
    for length in range(min(_LONGEST_SEQUENCE, len(data) - pos), 1, -1):
        key = _ESCAPE_SEQUENCES.get(data[pos : pos + length])
        if key is not None:
            return key, length
    return None


def translate_input(data: bytes) -> tuple[bytes, bool]:
    """Translate one read batch of raw terminal input into input channel bytes.

    Known special-key sequences and control bytes are re-encoded through
    ``encode_key``; anything unrecognized is passed through byte for byte.
    Scanning stops at the detach byte.

    Returns:
        ``(payload, detach)`` where ``payload`` holds everything before the
        detach byte and ``detach`` tells whether the detach byte was seen.
    """
    out = bytearray()
    pos = 0
    while pos < len(data):
        byte = data[pos]
        if byte == DETACH_BYTE:
            return bytes(out), True
        if byte == 0x1B:
            matched = _match_escape(data, pos)
            if matched is not None:
                key, length = matched
                out += encode_key(key)
                pos += length
                continue
        if byte < 0x20 or byte == 0x7F:
            key = _control_key(byte)
            if key is not None:
                out += encode_key(key)
            elif byte == 0x00:
                out += encode_key(" ", ctrl=True)
            else:
                out += encode_key(chr(byte | 0x40), ctrl=True)
        else:
            out.append(byte)
        pos += 1
    return bytes(out), False


__all__ = ["DETACH_BYTE", "Key", "KEY_SEQUENCES", "encode_key", "translate_input"]
