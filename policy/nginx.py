"""Text transforms for an nginx site configuration.

Two patch shapes, one per topology:

* Shared port: a marker-delimited block is inserted at the top of the site's
  ``location /`` block, routing every request that did not come from the
  cache daemon itself to the daemon's internal address.
* Dedicated port: ``listen`` directives on 80/443 are moved to the internal
  backend port. Each rewritten line keeps the original directive in a
  trailing comment, so reverting is exact.

Every function is pure (text in, text out) and raises :class:`PatchError`
when the configuration does not have the shape the patch needs.
"""
from __future__ import annotations

import re

MARKER_START = "# VARNISH_CACHE_START"
MARKER_END = "# VARNISH_CACHE_END"
LISTEN_MARKER = "# varnish-cache: listen"

HTTP_PORT = 80
HTTPS_PORT = 443

_LOCATION_ROOT_RE = re.compile(r"^(?P<indent>\s*)location\s+/\s*\{")
_LISTEN_RE = re.compile(
    r"^(?P<indent>\s*)listen\s+(?P<args>[^;#]+?)\s*;(?P<tail>.*)$"
)
_ORIGINAL_RE = re.compile(re.escape(LISTEN_MARKER) + r"\s+(?P<args>[^;]+);")


class PatchError(ValueError):
    """Raised when a configuration cannot be patched or reverted."""


# ---------------------------------------------------------------------------
# Shared-port marker block
# ---------------------------------------------------------------------------


def render_proxy_block(cache_address: str, indent: str = "        ") -> str:
    """Render the marker block routing traffic through the cache daemon."""
    body = [
        MARKER_START,
        "proxy_set_header Host $host;",
        "proxy_set_header X-Real-IP $remote_addr;",
        "proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
        "proxy_set_header X-Forwarded-Proto $scheme;",
        "proxy_set_header X-Forwarded-Port $server_port;",
        'if ($http_x_varnish_hop = "") {',
        f"    proxy_pass http://{cache_address};",
        "}",
        MARKER_END,
    ]
    return "".join(f"{indent}{line}\n" for line in body)


def has_marker_block(text: str) -> bool:
    return any(line.strip() == MARKER_START for line in text.splitlines())


def insert_marker_block(text: str, cache_address: str) -> str:
    """Insert the proxy block right after the first ``location /`` line."""
    if has_marker_block(text):
        return text
    lines = text.splitlines(keepends=True)
    for i, line in enumerate(lines):
        m = _LOCATION_ROOT_RE.match(line)
        if m:
            block = render_proxy_block(cache_address, m.group("indent") + "    ")
            if not line.endswith("\n"):
                lines[i] = line + "\n"
            lines.insert(i + 1, block)
            return "".join(lines)
    raise PatchError("No 'location /' block found in site configuration")


def remove_marker_block(text: str) -> str:
    """Remove every marker-delimited block, markers included."""
    out: list[str] = []
    inside = False
    for line in text.splitlines(keepends=True):
        stripped = line.strip()
        if stripped == MARKER_START:
            if inside:
                raise PatchError(f"Nested '{MARKER_START}' marker")
            inside = True
            continue
        if stripped == MARKER_END:
            if not inside:
                raise PatchError(f"'{MARKER_END}' without '{MARKER_START}'")
            inside = False
            continue
        if not inside:
            out.append(line)
    if inside:
        raise PatchError(f"'{MARKER_START}' without '{MARKER_END}'")
    return "".join(out)


# ---------------------------------------------------------------------------
# Dedicated-port listen relocation
# ---------------------------------------------------------------------------


def _split_address(args: str) -> tuple[str, int | None, str]:
    """Split listen args into ``(host_prefix, port, rest)``.

    ``"[::]:80 default_server"`` -> ``("[::]:", 80, " default_server")``
    """
    address, sep, rest = args.partition(" ")
    rest = sep + rest
    if address.isdigit():
        return "", int(address), rest
    host, colon, port = address.rpartition(":")
    if colon and port.isdigit() and not host.endswith(":"):
        return host + ":", int(port), rest
    return address, None, rest


def has_relocated_listen(text: str) -> bool:
    return LISTEN_MARKER in text


def relocate_listen(text: str, backend_port: int, tls_port_offset: int) -> str:
    """Move listen directives on 80/443 to the internal backend ports."""
    targets = {HTTP_PORT: backend_port, HTTPS_PORT: backend_port + tls_port_offset}
    changed = False
    out: list[str] = []
    for line in text.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        newline = line[len(body):]
        m = _LISTEN_RE.match(body)
        if m and LISTEN_MARKER not in body:
            host, port, rest = _split_address(m.group("args"))
            if port in targets:
                args = m.group("args")
                new_args = f"{host}{targets[port]}{rest}"
                body = f"{m.group('indent')}listen {new_args}; {LISTEN_MARKER} {args};"
                changed = True
        out.append(body + newline)
    if not changed:
        raise PatchError(
            f"No listen directive on port {HTTP_PORT} or {HTTPS_PORT} to relocate"
        )
    return "".join(out)


def restore_listen(text: str, backend_port: int, tls_port_offset: int) -> str:
    """Undo :func:`relocate_listen`.

    Lines carrying the listen marker get their original directive back.
    Lines without it that listen on the backend ports are moved back to
    80/443, which covers configurations edited by hand or by older tooling.
    """
    reverse = {backend_port: HTTP_PORT, backend_port + tls_port_offset: HTTPS_PORT}
    out: list[str] = []
    for line in text.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        newline = line[len(body):]
        m = _LISTEN_RE.match(body)
        if m:
            original = _ORIGINAL_RE.search(m.group("tail"))
            if original:
                body = f"{m.group('indent')}listen {original.group('args').strip()};"
            else:
                host, port, rest = _split_address(m.group("args"))
                if port in reverse:
                    body = f"{m.group('indent')}listen {host}{reverse[port]}{rest};{m.group('tail')}"
        out.append(body + newline)
    return "".join(out)
