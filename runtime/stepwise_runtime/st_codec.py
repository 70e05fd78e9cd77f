"""
ST (Stepwise Text) Encoder/Decoder
ASCII-safe text format for persisted interpreter states.

ST is a compact, deterministic rendering of JSON-shaped values. The same value
always encodes to the same text, which lets snapshots be content-addressed.
Non-ASCII characters are escaped, so the output is safe for logs and any
text-based transport.

Format Rules:
    None        -> "NULL"
    True        -> "TRUE"
    False       -> "FALSE"
    42          -> "42"
    3.5         -> "3.5"               (always carries '.' or 'e')
    inf, -inf   -> "INF", "-INF"
    nan         -> "NAN"
    "hello"     -> "\"hello\""
    "café" -> "\"caf\\u00e9\""
    [1, 2, 3]   -> "[1,2,3]"
    {x: 10}     -> "{x:10}"
    {"a b": 1}  -> "{\"a b\":1}"       (non-identifier and keyword keys are quoted)

A paused interpreter:
    {stateStack:[{node:{kind:"program",stmts:[]},ctx:{index:0}}],halted:FALSE}
"""

from typing import Any, Dict, List, Union
import math
import re

# Error codes
E_ST_ENCODE = "E_ST_ENCODE"
E_ST_DECODE = "E_ST_DECODE"


class STError(Exception):
    """ST encoding/decoding error"""
    pass


# Type alias
STValue = Union[None, bool, int, float, str, List[Any], Dict[str, Any]]

_IDENTIFIER = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')
_KEYWORDS = {'NULL', 'TRUE', 'FALSE', 'INF', 'NAN'}


class _Text(str):
    """Already-encoded output queued between values"""


class STEncoder:
    """Encodes Python values to ST (ASCII text) format"""

    def encode(self, value: Any) -> str:
        """
        Encode a Python value to an ST string

        Nested arrays and objects are walked with an explicit stack, so any
        nesting depth encodes.

        Args:
            value: None, bool, int, float, str, list/tuple or dict

        Returns:
            ST ASCII string

        Raises:
            STError: If value cannot be encoded
        """
        out: List[str] = []
        pending: List[Any] = [value]

        while pending:
            item = pending.pop()
            if type(item) is _Text:
                out.append(item)
            elif isinstance(item, (list, tuple)):
                self._expand_array(item, out, pending)
            elif isinstance(item, dict):
                self._expand_object(item, out, pending)
            else:
                out.append(self._encode_scalar(item))

        return ''.join(out)

    def _encode_scalar(self, value: Any) -> str:
        if value is None:
            return "NULL"

        elif isinstance(value, bool):
            return "TRUE" if value else "FALSE"

        elif isinstance(value, int):
            return str(value)

        elif isinstance(value, float):
            if math.isnan(value):
                return "NAN"
            if math.isinf(value):
                return "INF" if value > 0 else "-INF"
            # repr is the shortest exact form and always contains '.' or 'e'
            return repr(value)

        elif isinstance(value, str):
            return self._encode_string(value)

        else:
            raise STError(f"{E_ST_ENCODE}: Cannot encode type {type(value).__name__}")

    def _encode_string(self, s: str) -> str:
        """Encode a string with escaping; non-ASCII becomes \\uXXXX"""
        out = ['"']
        for ch in s:
            if ch == '\\':
                out.append('\\\\')
            elif ch == '"':
                out.append('\\"')
            elif ch == '\n':
                out.append('\\n')
            elif ch == '\t':
                out.append('\\t')
            elif ch == '\r':
                out.append('\\r')
            elif ord(ch) < 0x20 or ord(ch) > 0x7e:
                code = ord(ch)
                if code > 0xFFFF:
                    # Surrogate pair
                    code -= 0x10000
                    out.append(f"\\u{0xD800 + (code >> 10):04x}\\u{0xDC00 + (code & 0x3FF):04x}")
                else:
                    out.append(f"\\u{code:04x}")
            else:
                out.append(ch)
        out.append('"')
        return ''.join(out)

    def _expand_array(self, arr, out: List[str], pending: List[Any]):
        """Open [elem,elem,elem]; elements are queued in reverse"""
        out.append("[")
        pending.append(_Text("]"))
        for i in range(len(arr) - 1, -1, -1):
            pending.append(arr[i])
            if i:
                pending.append(_Text(","))

    def _expand_object(self, obj: Dict[str, Any], out: List[str], pending: List[Any]):
        """Open {key:val,key:val}; members are queued in reverse"""
        members = []
        for key, value in obj.items():
            if not isinstance(key, str):
                raise STError(f"{E_ST_ENCODE}: Object keys must be strings, got {type(key).__name__}")
            if _IDENTIFIER.fullmatch(key) and key not in _KEYWORDS:
                encoded_key = key
            else:
                encoded_key = self._encode_string(key)
            members.append((encoded_key, value))

        out.append("{")
        pending.append(_Text("}"))
        for i in range(len(members) - 1, -1, -1):
            encoded_key, value = members[i]
            pending.append(value)
            pending.append(_Text(f"{encoded_key}:"))
            if i:
                pending.append(_Text(","))


class STDecoder:
    """Decodes ST (ASCII text) format to Python values"""

    def __init__(self):
        """Initialize ST decoder with parsing state"""
        self.pos = 0
        self.text = ""

    def decode(self, st_str: str) -> Any:
        """
        Decode an ST string to a Python value

        Raises:
            STError: If parsing fails
        """
        if not isinstance(st_str, str):
            raise STError(f"{E_ST_DECODE}: Expected str, got {type(st_str).__name__}")

        self.text = st_str.strip()
        self.pos = 0

        if not self.text:
            raise STError(f"{E_ST_DECODE}: Empty input")

        result = self._parse_value()

        # Ensure we consumed all input
        self._skip_whitespace()
        if self.pos < len(self.text):
            raise STError(f"{E_ST_DECODE}: Unexpected content after value at position {self.pos}")

        return result

    def _parse_value(self) -> Any:
        """
        Parse one value from the current position

        Open arrays and objects are kept on an explicit stack of
        [container, pending_key] entries instead of recursing.
        """
        open_containers: List[List[Any]] = []

        while True:
            self._skip_whitespace()
            if self.pos >= len(self.text):
                raise STError(f"{E_ST_DECODE}: Unexpected end of input")

            char = self.text[self.pos]
            if char == '[':
                self.pos += 1
                self._skip_whitespace()
                if self._peek() != ']':
                    open_containers.append([[], None])
                    continue
                self.pos += 1
                value = []
            elif char == '{':
                self.pos += 1
                self._skip_whitespace()
                if self._peek() != '}':
                    open_containers.append([{}, self._read_key()])
                    continue
                self.pos += 1
                value = {}
            else:
                value = self._parse_scalar()

            # Store the value, closing every container that ends right after it
            while True:
                if not open_containers:
                    return value
                entry = open_containers[-1]
                container, key = entry
                is_array = isinstance(container, list)
                if is_array:
                    container.append(value)
                else:
                    container[key] = value

                self._skip_whitespace()
                if self.pos >= len(self.text):
                    raise STError(f"{E_ST_DECODE}: Unterminated {'array' if is_array else 'object'}")

                char = self.text[self.pos]
                if char == ',':
                    self.pos += 1
                    if not is_array:
                        entry[1] = self._read_key()
                    break
                if char == (']' if is_array else '}'):
                    self.pos += 1
                    open_containers.pop()
                    value = container
                    continue
                if is_array:
                    raise STError(f"{E_ST_DECODE}: Expected ',' or ']' in array at position {self.pos}")
                raise STError(f"{E_ST_DECODE}: Expected ',' or '}}' in object at position {self.pos}")

    def _parse_scalar(self) -> Any:
        """Parse a keyword, string or number"""
        char = self.text[self.pos]

        if self._match("NULL"):
            return None

        if self._match("TRUE"):
            return True

        if self._match("FALSE"):
            return False

        if self._match("INF"):
            return math.inf

        if self._match("-INF"):
            return -math.inf

        if self._match("NAN"):
            return math.nan

        if char == '"':
            return self._read_string()

        if char == '-' or char.isdigit():
            return self._read_number()

        raise STError(f"{E_ST_DECODE}: Unexpected character '{char}' at position {self.pos}")

    def _peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ''

    def _match(self, keyword: str) -> bool:
        """Try to match a keyword at current position"""
        if self.text[self.pos:self.pos + len(keyword)] == keyword:
            # Make sure it's not part of a longer word
            end_pos = self.pos + len(keyword)
            if end_pos >= len(self.text) or not (self.text[end_pos].isalnum() or self.text[end_pos] == '_'):
                self.pos = end_pos
                return True
        return False

    def _read_key(self) -> str:
        """Read an object key (identifier or quoted string) and its ':'"""
        self._skip_whitespace()
        if self.pos >= len(self.text):
            raise STError(f"{E_ST_DECODE}: Unterminated object")

        if self.text[self.pos] == '"':
            key = self._read_string()
        else:
            key = self._read_identifier()

        self._skip_whitespace()
        if self.pos >= len(self.text) or self.text[self.pos] != ':':
            raise STError(f"{E_ST_DECODE}: Expected ':' after key '{key}' at position {self.pos}")
        self.pos += 1
        return key

    def _read_string(self) -> str:
        """Read a quoted string with escape handling"""
        self.pos += 1  # Skip opening quote

        result = []
        while self.pos < len(self.text):
            char = self.text[self.pos]

            if char == '"':
                self.pos += 1
                return ''.join(result)

            if char == '\\':
                self.pos += 1
                if self.pos >= len(self.text):
                    raise STError(f"{E_ST_DECODE}: Unterminated escape sequence")

                escaped = self.text[self.pos]
                if escaped == 'n':
                    result.append('\n')
                elif escaped == 't':
                    result.append('\t')
                elif escaped == 'r':
                    result.append('\r')
                elif escaped == '\\':
                    result.append('\\')
                elif escaped == '"':
                    result.append('"')
                elif escaped == 'u':
                    result.append(chr(self._read_code_unit()))
                    continue
                else:
                    raise STError(f"{E_ST_DECODE}: Unknown escape '\\{escaped}' at position {self.pos}")

                self.pos += 1
            else:
                result.append(char)
                self.pos += 1

        raise STError(f"{E_ST_DECODE}: Unterminated string")

    def _read_code_unit(self) -> int:
        """Read the XXXX of \\uXXXX (pos on 'u'), joining surrogate pairs"""
        code = self._read_hex4()
        if 0xD800 <= code <= 0xDBFF and self.text[self.pos:self.pos + 2] == '\\u':
            self.pos += 1
            low = self._read_hex4()
            if not 0xDC00 <= low <= 0xDFFF:
                raise STError(f"{E_ST_DECODE}: Invalid surrogate pair at position {self.pos}")
            code = 0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)
        return code

    def _read_hex4(self) -> int:
        digits = self.text[self.pos + 1:self.pos + 5]
        if len(digits) != 4 or any(c not in '0123456789abcdefABCDEF' for c in digits):
            raise STError(f"{E_ST_DECODE}: Invalid \\u escape at position {self.pos}")
        self.pos += 5
        return int(digits, 16)

    def _read_number(self) -> Union[int, float]:
        """Read a number (int or float)"""
        start = self.pos
        num_str = self._read_number_str()

        try:
            if '.' in num_str or 'e' in num_str.lower():
                return float(num_str)
            return int(num_str)
        except ValueError:
            raise STError(f"{E_ST_DECODE}: Invalid number '{num_str}' at position {start}") from None

    def _read_number_str(self) -> str:
        """Read digits (and . for floats, - for negative) until non-digit"""
        start = self.pos

        # Optional negative sign
        if self.pos < len(self.text) and self.text[self.pos] == '-':
            self.pos += 1

        # Digits before decimal
        while self.pos < len(self.text) and self.text[self.pos].isdigit():
            self.pos += 1

        # Optional decimal part
        if self.pos < len(self.text) and self.text[self.pos] == '.':
            self.pos += 1
            while self.pos < len(self.text) and self.text[self.pos].isdigit():
                self.pos += 1

        # Optional exponent
        if self.pos < len(self.text) and self.text[self.pos].lower() == 'e':
            self.pos += 1
            if self.pos < len(self.text) and self.text[self.pos] in '+-':
                self.pos += 1
            while self.pos < len(self.text) and self.text[self.pos].isdigit():
                self.pos += 1

        return self.text[start:self.pos]

    def _read_identifier(self) -> str:
        """Read an identifier (alphanumeric + underscore)"""
        start = self.pos

        while self.pos < len(self.text):
            char = self.text[self.pos]
            if char.isalnum() or char == '_':
                self.pos += 1
            else:
                break

        if self.pos == start:
            raise STError(f"{E_ST_DECODE}: Expected identifier at position {self.pos}")

        return self.text[start:self.pos]

    def _skip_whitespace(self):
        """Skip whitespace characters"""
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1


# Convenience functions

def encode_st(value: Any) -> str:
    """
    Encode a Python value to ST (ASCII text) format

    Example:
        >>> encode_st(None)
        'NULL'
        >>> encode_st({'kind': 'literal', 'value': 40})
        '{kind:"literal",value:40}'
    """
    return STEncoder().encode(value)


def decode_st(st_str: str) -> Any:
    """
    Decode an ST (ASCII text) string to a Python value

    Example:
        >>> decode_st('{index:1}')
        {'index': 1}
    """
    return STDecoder().decode(st_str)


def encode_state(state: Any) -> str:
    """Encode an interpreter (anything with serialize()) or its serialized dict"""
    if hasattr(state, 'serialize'):
        state = state.serialize()
    if not isinstance(state, dict):
        raise STError(f"{E_ST_ENCODE}: Expected serialized state dict, got {type(state).__name__}")
    return encode_st(state)


def decode_state(st_str: str) -> Dict[str, Any]:
    """Decode ST text that must hold a serialized state record"""
    state = decode_st(st_str)
    if not isinstance(state, dict) or 'stateStack' not in state:
        raise STError(f"{E_ST_DECODE}: Text does not hold a serialized state")
    return state


# Roundtrip validation

def verify_st_bijection(value: Any) -> bool:
    """
    Verify that encode -> decode -> encode produces identical results

    Args:
        value: Python value to test

    Returns:
        True if bijection holds
    """
    try:
        encoded1 = encode_st(value)
        decoded = decode_st(encoded1)
        encoded2 = encode_st(decoded)
        return encoded1 == encoded2
    except STError:
        return False
