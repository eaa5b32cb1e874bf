"""VCL rendering for the shared Varnish daemon.

Layout on a host::

    /etc/varnish/default.vcl          master skeleton, one include per site
    /etc/varnish/sites/<domain>.vcl   per-site policy document

Varnish concatenates subroutines of the same name in definition order, so
every per-site document scopes its ``vcl_recv`` / ``vcl_backend_response``
logic to its own host-match condition and never affects another site.

All renderers are pure: identical inputs give byte-identical output, which
is what lets provisioning probes compare rendered text with deployed text.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Sequence

DEFAULT_STATIC_EXTENSIONS: tuple[str, ...] = (
    "css", "js", "jpg", "jpeg", "png", "gif", "ico",
    "woff", "woff2", "ttf", "svg", "webp",
)

# Already-compressed formats: Accept-Encoding is dropped for these.
_PRECOMPRESSED_EXTENSIONS: tuple[str, ...] = (
    "jpg", "jpeg", "png", "gif", "gz", "tgz", "bz2", "tbz",
    "mp3", "ogg", "swf", "woff", "woff2",
)

MANAGED_MARKER = "# Managed by CacheOrchestrator"
HOP_HEADER = "X-Varnish-Hop"
PURGE_REGEX_HEADER = "X-Purge-Regex"

_HOSTNAME_RE = re.compile(
    r"^(?=.{1,253}$)[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?"
    r"(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*$"
)
_EXTENSION_RE = re.compile(r"^[a-z0-9]+$")
_TTL_RE = re.compile(r"^\d+(ms|s|m|h|d|w|y)$")
_INCLUDE_RE = re.compile(r'^\s*include\s+"([^"]+)"\s*;\s*$')


def normalize_hosts(domain: str, aliases: Iterable[str] = ()) -> list[str]:
    """Return ``[domain, *aliases]`` lowercased, stripped and de-duplicated.

    Raises:
        ValueError: A host name is empty or not a valid DNS name.
    """
    if not domain.strip():
        raise ValueError("Primary domain is empty")
    hosts: list[str] = []
    for raw in [domain, *aliases]:
        host = raw.strip().lower()
        if not host:
            continue
        if not _HOSTNAME_RE.match(host):
            raise ValueError(f"Invalid host name: {raw!r}")
        if host not in hosts:
            hosts.append(host)
    return hosts


def build_host_condition(hosts: Sequence[str], field: str = "req.http.host") -> str:
    """Join host equality tests with ``||``.

    >>> build_host_condition(["example.com", "www.example.com"], field="host")
    'host == "example.com" || host == "www.example.com"'
    """
    if not hosts:
        raise ValueError("At least one host is required")
    return " || ".join(f'{field} == "{host}"' for host in hosts)


def backend_name(domain: str) -> str:
    """VCL identifier for the backend of *domain*."""
    return "site_" + re.sub(r"[^a-z0-9]", "_", domain.strip().lower())


def _extension_pattern(extensions: Iterable[str]) -> str:
    exts = [e.strip().lower().lstrip(".") for e in extensions]
    for ext in exts:
        if not _EXTENSION_RE.match(ext):
            raise ValueError(f"Invalid file extension: {ext!r}")
    if not exts:
        raise ValueError("At least one static asset extension is required")
    return "\\.(" + "|".join(exts) + ")$"


def render_site_policy(
    domain: str,
    aliases: Iterable[str],
    ttl_seconds: int,
    static_asset_extensions: Iterable[str] = DEFAULT_STATIC_EXTENSIONS,
    *,
    backend_host: str = "127.0.0.1",
    backend_port: int = 80,
    static_ttl: str = "1h",
) -> str:
    """Render the per-site caching policy document."""
    if ttl_seconds < 0:
        raise ValueError(f"ttl_seconds must be >= 0, got {ttl_seconds}")
    if not _TTL_RE.match(static_ttl):
        raise ValueError(f"Invalid static asset TTL: {static_ttl!r}")
    if not 1 <= backend_port <= 65535:
        raise ValueError(f"Invalid backend port: {backend_port}")

    hosts = normalize_hosts(domain, aliases)
    backend = backend_name(hosts[0])
    req_match = build_host_condition(hosts, "req.http.host")
    bereq_match = build_host_condition(hosts, "bereq.http.host")
    static = _extension_pattern(static_asset_extensions)
    precompressed = _extension_pattern(_PRECOMPRESSED_EXTENSIONS)

    return f"""{MANAGED_MARKER}: site policy for {hosts[0]}

backend {backend} {{
    .host = "{backend_host}";
    .port = "{backend_port}";
    .connect_timeout = 600s;
    .first_byte_timeout = 600s;
    .between_bytes_timeout = 600s;
}}

sub vcl_recv {{
    if ({req_match}) {{
        set req.backend_hint = {backend};

        # Non-idempotent methods are never cached.
        if (req.method != "GET" && req.method != "HEAD") {{
            return (pass);
        }}

        # Static assets never depend on cookies.
        if (req.url ~ "{static}") {{
            unset req.http.Cookie;
        }}

        # Authenticated or cookie-bearing requests bypass the cache.
        if (req.http.Authorization || req.http.Cookie) {{
            return (pass);
        }}

        if (req.http.Accept-Encoding) {{
            if (req.url ~ "{precompressed}") {{
                unset req.http.Accept-Encoding;
            }} elsif (req.http.Accept-Encoding ~ "gzip") {{
                set req.http.Accept-Encoding = "gzip";
            }} elsif (req.http.Accept-Encoding ~ "deflate") {{
                set req.http.Accept-Encoding = "deflate";
            }} else {{
                unset req.http.Accept-Encoding;
            }}
        }}

        return (hash);
    }}
}}

sub vcl_backend_fetch {{
    if ({bereq_match}) {{
        set bereq.http.{HOP_HEADER} = "1";
    }}
}}

sub vcl_backend_response {{
    if ({bereq_match}) {{
        set beresp.ttl = {ttl_seconds}s;

        # Error responses are never cached.
        if (beresp.status >= 400) {{
            set beresp.ttl = 0s;
            return (deliver);
        }}

        if (bereq.url ~ "{static}") {{
            set beresp.ttl = {static_ttl};
        }}

        if (beresp.ttl > 0s) {{
            unset beresp.http.Set-Cookie;
        }}

        return (deliver);
    }}
}}

sub vcl_deliver {{
    if ({req_match}) {{
        if (obj.hits > 0) {{
            set resp.http.X-Cache = "HIT";
            set resp.http.X-Cache-Hits = obj.hits;
        }} else {{
            set resp.http.X-Cache = "MISS";
        }}

        unset resp.http.X-Powered-By;
        unset resp.http.Server;
        unset resp.http.X-Varnish;
        unset resp.http.Via;
    }}
}}
"""


# ---------------------------------------------------------------------------
# Master configuration
# ---------------------------------------------------------------------------


def include_line(policy_path: str) -> str:
    return f'include "{policy_path}";'


def render_master_config(includes: Iterable[str] = ()) -> str:
    """Render the managed master skeleton followed by *includes*."""
    lines = [include_line(path) for path in includes]
    body = "\n".join(lines)
    return f"""vcl 4.1;
{MANAGED_MARKER}: master configuration. Site policies are included at the end.

backend default none;

acl purge {{
    "localhost";
    "127.0.0.1";
    "::1";
}}

sub vcl_recv {{
    if (req.method == "PURGE") {{
        if (!client.ip ~ purge) {{
            return (synth(405, "Not allowed"));
        }}
        if (req.http.{PURGE_REGEX_HEADER}) {{
            ban("req.http.host == " + req.http.host + " && req.url ~ " + req.http.{PURGE_REGEX_HEADER});
            return (synth(200, "Banned"));
        }}
        return (purge);
    }}
}}

# Site includes
{body}
""".rstrip("\n") + "\n"


def is_managed_master(text: str) -> bool:
    return any(line.startswith(MANAGED_MARKER) for line in text.splitlines())


def site_includes(text: str) -> list[str]:
    """Return the policy paths included by a master configuration, in order."""
    paths: list[str] = []
    for line in text.splitlines():
        m = _INCLUDE_RE.match(line)
        if m:
            paths.append(m.group(1))
    return paths


def count_includes(text: str, policy_path: str) -> int:
    return site_includes(text).count(policy_path)


def add_include(text: str, policy_path: str) -> str:
    """Return *text* with exactly one include line for *policy_path*.

    Other lines are left untouched; a missing include is appended at the end.
    """
    if count_includes(text, policy_path) == 1:
        return text
    text = remove_include(text, policy_path)
    if text and not text.endswith("\n"):
        text += "\n"
    return text + include_line(policy_path) + "\n"


def remove_include(text: str, policy_path: str) -> str:
    """Return *text* without any include line for *policy_path*."""
    kept = [
        line for line in text.splitlines(keepends=True)
        if not (
            (m := _INCLUDE_RE.match(line.rstrip("\r\n")))
            and m.group(1) == policy_path
        )
    ]
    return "".join(kept)
