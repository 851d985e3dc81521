"""Parser registry and the built-in structured log parsers.

Every parser is a pure function ``(raw_text, hint) -> dict`` registered under a
name. Parsers signal failure by raising ``ValueError``; the registry turns that
into a ``ParseError`` carrying the source id, so nothing past the registry ever
sees a parser crash.

Built-in parsers:
  syslog               RFC 3164 / RFC 5424
  linux_authorization  auth.log / secure, with ssh/sudo/su/pam fields
  nginx                combined access log
  apache               common / combined access log
  bodyfile             Sleuth Kit bodyfile, timestamp = ctime
  json                 one JSON object per line
  journald             ``journalctl -o json`` export
"""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from lognorm.errors import ConfigError, ParseError

ParserFunc = Callable[[str, str | None], dict[str, Any]]


@dataclass(frozen=True)
class ParserInfo:
    name: str
    func: ParserFunc
    formats: tuple[str, ...] = ()
    default_format: str | None = None


_PARSERS: dict[str, ParserInfo] = {}


def register_parser(name: str, formats: tuple[str, ...] = (), default_format: str | None = None):
    """Decorator registering a parser function under ``name``."""
    def decorator(func: ParserFunc) -> ParserFunc:
        _PARSERS[name] = ParserInfo(name, func, formats, default_format)
        return func
    return decorator


def get_parser(name: str) -> ParserInfo:
    try:
        return _PARSERS[name]
    except KeyError:
        raise ConfigError(f"unknown parser {name!r}") from None


def available_parsers() -> list[str]:
    return sorted(_PARSERS)


class ParserRegistry:
    """Binds source ids to parsers and runs them without ever raising past ParseError."""

    def __init__(self):
        self._bindings: dict[str, tuple[ParserInfo, str | None]] = {}

    def bind(self, source_id: str, parser_name: str, hint: str | None = None):
        info = get_parser(parser_name)
        validate_hint(info, hint)
        self._bindings[source_id] = (info, hint)

    def is_bound(self, source_id: str) -> bool:
        return source_id in self._bindings

    def parse(self, source_id: str, raw_text: str) -> dict[str, Any]:
        """Parse ``raw_text`` with the parser bound to ``source_id``."""
        try:
            info, hint = self._bindings[source_id]
        except KeyError:
            raise ParseError(source_id, raw_text, "no parser bound") from None
        return _run(info, source_id, raw_text, hint)

    @staticmethod
    def parse_with(parser_name: str, raw_text: str, hint: str | None = None,
                   source_id: str = "") -> dict[str, Any]:
        """Run a named parser directly."""
        info = get_parser(parser_name)
        return _run(info, source_id, raw_text, hint)


def validate_hint(info: ParserInfo, hint: str | None):
    if hint is None:
        return
    if hint not in info.formats:
        raise ConfigError(
            f"parser {info.name!r} does not support format {hint!r} "
            f"(supported: {', '.join(info.formats) or 'none'})"
        )


def _run(info: ParserInfo, source_id: str, raw_text: str, hint: str | None) -> dict[str, Any]:
    try:
        return info.func(raw_text, hint or info.default_format)
    except ParseError:
        raise
    except Exception as e:
        # includes RecursionError from deeply nested JSON
        raise ParseError(source_id, raw_text, f"{info.name}: {e}") from e


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_FACILITIES = [
    "kern", "user", "mail", "daemon", "auth", "syslog", "lpr", "news",
    "uucp", "cron", "authpriv", "ftp", "ntp", "security", "console", "solaris-cron",
    "local0", "local1", "local2", "local3", "local4", "local5", "local6", "local7",
]

_SEVERITIES = ["emerg", "alert", "crit", "err", "warning", "notice", "info", "debug"]


def _maybe_int(value: str | None) -> int | str | None:
    if value is None or value == "-":
        return None
    try:
        return int(value)
    except ValueError:
        return value


def _bsd_time(text: str, now: datetime | None = None) -> datetime:
    """Convert 'Jan  5 14:30:01' to a UTC datetime.

    BSD timestamps carry no year: assume the current one unless that puts the
    event more than a day in the future.
    """
    now = now or datetime.now(timezone.utc)
    parsed = datetime.strptime(f"{now.year} {' '.join(text.split())}", "%Y %b %d %H:%M:%S")
    parsed = parsed.replace(tzinfo=timezone.utc)
    if parsed - now > timedelta(days=1):
        parsed = parsed.replace(year=now.year - 1)
    return parsed


def _iso_time(text: str) -> datetime:
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _syslog_time(text: str) -> datetime:
    if text[:4].isdigit():
        return _iso_time(text)
    return _bsd_time(text)


def _epoch_time(text: str) -> datetime:
    """Parse Unix epoch seconds (format '%s')."""
    return datetime.fromtimestamp(int(text.strip()), tz=timezone.utc)


def _clf_time(text: str) -> datetime:
    """Convert '10/Oct/2000:13:55:36 -0700' to a UTC datetime."""
    return datetime.strptime(text, "%d/%b/%Y:%H:%M:%S %z").astimezone(timezone.utc)


def _drop_empty(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in fields.items() if v is not None and v != "-"}


# ---------------------------------------------------------------------------
# Syslog
# ---------------------------------------------------------------------------

_BSD_TS = r"[A-Z][a-z]{2}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2}"
_ISO_TS = r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+\-]\d{2}:?\d{2})?"

_RFC3164_RE = re.compile(
    r"^(?:<(?P<pri>\d{1,3})>)?"
    rf"(?P<ts>{_BSD_TS}|{_ISO_TS})\s+"
    r"(?P<host>\S+)\s+"
    r"(?P<app>[^\s\[:]+)"
    r"(?:\[(?P<pid>[^\]]*)\])?:\s?"
    r"(?P<msg>.*)$"
)

_RFC5424_RE = re.compile(
    r"^<(?P<pri>\d{1,3})>(?P<version>\d{1,2}) "
    r"(?P<ts>\S+) (?P<host>\S+) (?P<app>\S+) (?P<pid>\S+) (?P<msgid>\S+) "
    r"(?P<sd>-|(?:\[(?:[^\]\\]|\\.)*\])+)"
    r"(?: (?P<msg>.*))?$"
)

_SD_ELEMENT_RE = re.compile(r"\[(?P<id>[^\s\]]+)(?P<params>(?:\s+[^=\s]+=\"(?:[^\"\\]|\\.)*\")*)\s*\]")
_SD_PARAM_RE = re.compile(r"([^=\s]+)=\"((?:[^\"\\]|\\.)*)\"")


def _priority_fields(pri: str | None) -> dict[str, Any]:
    if pri is None:
        return {}
    value = int(pri)
    if value > 191:
        raise ValueError(f"priority {value} out of range")
    return {"facility": _FACILITIES[value // 8], "severity": _SEVERITIES[value % 8]}


def _structured_data(sd: str) -> dict[str, Any]:
    if sd == "-":
        return {}
    elements = {}
    for m in _SD_ELEMENT_RE.finditer(sd):
        params = {k: v.replace('\\"', '"') for k, v in _SD_PARAM_RE.findall(m.group("params"))}
        elements[m.group("id")] = params
    return elements


@register_parser("syslog")
def parse_syslog(raw_text: str, hint: str | None = None) -> dict[str, Any]:
    line = raw_text.strip()
    m = _RFC5424_RE.match(line)
    if m:
        fields = {
            "hostname": m.group("host"),
            "appname": m.group("app"),
            "procid": _maybe_int(m.group("pid")),
            "msgid": m.group("msgid"),
            "version": int(m.group("version")),
            "timestamp": _iso_time(m.group("ts")) if m.group("ts") != "-" else None,
            "message": m.group("msg") or "",
        }
        fields.update(_priority_fields(m.group("pri")))
        fields.update(_structured_data(m.group("sd")))
        return _drop_empty(fields)

    m = _RFC3164_RE.match(line)
    if not m:
        raise ValueError("line does not match RFC 3164 or RFC 5424 syslog")
    fields = {
        "hostname": m.group("host"),
        "appname": m.group("app"),
        "procid": _maybe_int(m.group("pid")),
        "timestamp": _syslog_time(m.group("ts")),
        "message": m.group("msg"),
    }
    fields.update(_priority_fields(m.group("pri")))
    return _drop_empty(fields)


# ---------------------------------------------------------------------------
# Linux authorization (auth.log / secure)
# ---------------------------------------------------------------------------

_AUTH_HEADER_RE = re.compile(
    rf"^(?P<ts>{_BSD_TS}|{_ISO_TS})\s+"
    r"(?P<host>\S+)\s+"
    r"(?P<app>[^\s\[:]+)"
    r"(?:\[(?P<pid>\d+)\])?:\s?"
    r"(?P<msg>.*)$"
)

# first match wins; group names map onto output fields via _AUTH_FIELD_NAMES
AUTH_PATTERNS = {
    "ssh_accepted": re.compile(
        r"Accepted\s+(?P<method>\S+)\s+for\s+(?P<user>\S+)\s+from\s+(?P<src_ip>\S+)\s+port\s+(?P<src_port>\d+)"
    ),
    "ssh_failed": re.compile(
        r"Failed\s+(?P<method>\S+)\s+for\s+(?:invalid user\s+)?(?P<user>\S+)\s+from\s+(?P<src_ip>\S+)\s+port\s+(?P<src_port>\d+)"
    ),
    "ssh_invalid_user": re.compile(r"Invalid user\s+(?P<user>\S*)\s+from\s+(?P<src_ip>\S+)"),
    "ssh_disconnect": re.compile(
        r"Disconnected from\s+(?:(?:authenticating |invalid )?user\s+(?P<user>\S+)\s+)?(?P<src_ip>\S+)\s+port\s+(?P<src_port>\d+)"
    ),
    "sudo_command": re.compile(
        r"(?P<user>\S+)\s+:\s+(?:.*?;\s+)?TTY=(?P<tty>\S+)\s+;\s+PWD=(?P<pwd>[^;]+?)\s*;\s+USER=(?P<target_user>\S+)\s*;\s+COMMAND=(?P<command>.+)"
    ),
    "sudo_failed": re.compile(r"(?P<user>\S+)\s+:\s+(?P<attempts>\d+)\s+incorrect password attempts?"),
    "su_success": re.compile(r"Successful su for\s+(?P<target_user>\S+)\s+by\s+(?P<user>\S+)"),
    "su_failed": re.compile(r"FAILED su for\s+(?P<target_user>\S+)\s+by\s+(?P<user>\S+)"),
    "pam_session": re.compile(
        r"pam_unix\((?P<service>[^:]+):session\):\s+session\s+(?P<action>opened|closed)\s+for user\s+(?P<user>[^\s(]+)"
    ),
    "pam_auth_failure": re.compile(
        r"pam_unix\((?P<service>[^:]+):auth\):\s+authentication failure;.*?user=(?P<user>\S+)"
    ),
    "useradd": re.compile(r"new user: name=(?P<user>[^,\s]+),\s*UID=(?P<uid>\d+)"),
    "userdel": re.compile(r"delete user '(?P<user>[^']+)'"),
    "passwd_change": re.compile(r"password changed for\s+(?P<user>\S+)"),
}

_AUTH_FIELD_NAMES = {
    "method": "auth_method",
    "src_ip": "source_ip",
    "src_port": "source_port",
}

_AUTH_INT_FIELDS = {"source_port", "uid", "attempts"}


def _auth_fields(message: str) -> dict[str, Any]:
    for event, pattern in AUTH_PATTERNS.items():
        m = pattern.search(message)
        if not m:
            continue
        fields: dict[str, Any] = {"auth_event": event}
        for key, value in m.groupdict().items():
            if value is None:
                continue
            name = _AUTH_FIELD_NAMES.get(key, key)
            fields[name] = int(value) if name in _AUTH_INT_FIELDS else value.strip()
        return fields
    return {}


@register_parser("linux_authorization")
def parse_linux_authorization(raw_text: str, hint: str | None = None) -> dict[str, Any]:
    m = _AUTH_HEADER_RE.match(raw_text.strip())
    if not m:
        raise ValueError("line does not match the authorization log header")
    fields = {
        "hostname": m.group("host"),
        "appname": m.group("app"),
        "procid": _maybe_int(m.group("pid")),
        "timestamp": _syslog_time(m.group("ts")),
        "message": m.group("msg"),
    }
    fields.update(_auth_fields(m.group("msg")))
    return _drop_empty(fields)


# ---------------------------------------------------------------------------
# Web servers
# ---------------------------------------------------------------------------

_NGINX_COMBINED_RE = re.compile(
    r'^(?P<client>\S+) - (?P<user>\S+) '
    r'\[(?P<time>[^\]]+)\] '
    r'"(?P<request>[^"]*)" '
    r'(?P<status>\d{3}) '
    r'(?P<size>\d+|-) '
    r'"(?P<referer>[^"]*)" '
    r'"(?P<agent>[^"]*)"'
    r'(?: "(?P<compression>[^"]*)")?$'
)

_APACHE_COMMON_RE = re.compile(
    r'^(?P<host>\S+) (?P<identity>\S+) (?P<user>\S+) '
    r'\[(?P<time>[^\]]+)\] '
    r'"(?P<request>[^"]*)" '
    r'(?P<status>\d{3}|-) '
    r'(?P<size>\d+|-)$'
)

_APACHE_COMBINED_RE = re.compile(
    r'^(?P<host>\S+) (?P<identity>\S+) (?P<user>\S+) '
    r'\[(?P<time>[^\]]+)\] '
    r'"(?P<request>[^"]*)" '
    r'(?P<status>\d{3}|-) '
    r'(?P<size>\d+|-) '
    r'"(?P<referrer>[^"]*)" '
    r'"(?P<agent>[^"]*)"$'
)


def _request_fields(request: str) -> dict[str, Any]:
    """Split 'GET /path HTTP/1.1' into method, path, protocol."""
    parts = request.split(" ")
    if len(parts) == 3:
        return {"method": parts[0], "path": parts[1], "protocol": parts[2]}
    return {}


@register_parser("nginx", formats=("combined",), default_format="combined")
def parse_nginx(raw_text: str, hint: str | None = "combined") -> dict[str, Any]:
    m = _NGINX_COMBINED_RE.match(raw_text.strip())
    if not m:
        raise ValueError("line does not match the nginx combined format")
    fields = {
        "client": m.group("client"),
        "user": m.group("user"),
        "timestamp": _clf_time(m.group("time")),
        "request": m.group("request"),
        "status": int(m.group("status")),
        "size": _maybe_int(m.group("size")),
        "referer": m.group("referer"),
        "agent": m.group("agent"),
        "compression": m.group("compression"),
    }
    fields.update(_request_fields(m.group("request")))
    return _drop_empty(fields)


@register_parser("apache", formats=("common", "combined"), default_format="common")
def parse_apache(raw_text: str, hint: str | None = "common") -> dict[str, Any]:
    pattern = _APACHE_COMBINED_RE if hint == "combined" else _APACHE_COMMON_RE
    m = pattern.match(raw_text.strip())
    if not m:
        raise ValueError(f"line does not match the apache {hint} format")
    groups = m.groupdict()
    fields = {
        "host": groups["host"],
        "identity": groups["identity"],
        "user": groups["user"],
        "timestamp": _clf_time(groups["time"]),
        "status": _maybe_int(groups["status"]),
        "size": _maybe_int(groups["size"]),
        "referrer": groups.get("referrer"),
        "agent": groups.get("agent"),
    }
    fields.update(_request_fields(groups["request"]))
    return _drop_empty(fields)


# ---------------------------------------------------------------------------
# Bodyfile
# ---------------------------------------------------------------------------

# MD5|name|inode|mode|UID|GID|size|atime|mtime|ctime|crtime
_BODYFILE_RE = re.compile(
    r"^.+?\|(?P<filename>.+?)\|.+?\|(?P<permissions>.+?)\|(?:.+?\|){2}"
    r"(?P<size>.+?)\|(?P<accessed>.+?)\|(?P<modified>.+?)\|(?P<changed>.+?)\|(?P<born>.+?)$"
)


@register_parser("bodyfile")
def parse_bodyfile(raw_text: str, hint: str | None = None) -> dict[str, Any]:
    """Parse a bodyfile line. The record timestamp is the metadata change time."""
    m = _BODYFILE_RE.match(raw_text.rstrip("\r\n"))
    if not m:
        raise ValueError("line does not match the bodyfile layout")
    fields: dict[str, Any] = {
        "filename": m.group("filename"),
        "permissions": m.group("permissions"),
        "size": _maybe_int(m.group("size")),
    }
    for name in ("accessed", "modified", "changed", "born"):
        try:
            fields[name] = _epoch_time(m.group(name))
        except ValueError:
            raise ValueError(f"{name} is not an epoch timestamp: {m.group(name)!r}") from None
    fields["timestamp"] = fields["changed"]
    return fields


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

@register_parser("json")
def parse_json(raw_text: str, hint: str | None = None) -> dict[str, Any]:
    data = json.loads(raw_text)
    if not isinstance(data, dict):
        raise ValueError("JSON line is not an object")
    if "timestamp" in data and isinstance(data["timestamp"], str):
        try:
            data["timestamp"] = _iso_time(data["timestamp"])
        except ValueError:
            pass  # keep the original string; the normalizer will not replace it
    return data


@register_parser("journald")
def parse_journald(raw_text: str, hint: str | None = None) -> dict[str, Any]:
    data = json.loads(raw_text)
    if not isinstance(data, dict):
        raise ValueError("journal entry is not an object")
    fields = dict(data)
    realtime = data.get("__REALTIME_TIMESTAMP")
    if realtime is not None:
        micros = int(realtime)
        fields["timestamp"] = datetime.fromtimestamp(micros // 1_000_000, tz=timezone.utc) + \
            timedelta(microseconds=micros % 1_000_000)
    if "MESSAGE" in data:
        fields["message"] = data["MESSAGE"]
    if "_HOSTNAME" in data:
        fields["hostname"] = data["_HOSTNAME"]
    return fields
