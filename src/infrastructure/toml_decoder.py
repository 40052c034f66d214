import math
import tomllib
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Dict, Union

from src.domain.exceptions import ConfigDecodeException


def _to_json_safe(value: Any) -> Any:
    # TOML has native date/time values that JSON does not.
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    # NaN and infinities are not JSON; Postgres rejects them in jsonb.
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {key: _to_json_safe(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_to_json_safe(item) for item in value]
    return value


class TomlConfigDecoder:
    """Decodes TOML configuration files into JSON-compatible dictionaries."""

    def decode(self, text: str, source: str = "<string>") -> Dict[str, Any]:
        try:
            document = tomllib.loads(text)
        except tomllib.TOMLDecodeError as e:
            raise ConfigDecodeException(source, str(e)) from e
        return _to_json_safe(document)

    def decode_file(self, path: Union[str, Path]) -> Dict[str, Any]:
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigDecodeException(str(path), str(e)) from e
        return self.decode(text, source=str(path))
