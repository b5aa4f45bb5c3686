from __future__ import annotations

import ipaddress
import logging
import mimetypes
import re
import socket
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx

from narration_service.errors import DownloadError, DownloadFailure

ALLOWED_SCHEMES = frozenset({"http", "https"})

BLOCKED_HOSTS = frozenset(
    {
        "localhost",
        "127.0.0.1",
        "0.0.0.0",
        "169.254.169.254",
        "::1",
        "metadata.google.internal",
        "metadata",
    }
)

BLOCKED_PREFIXES = ("10.", "127.", "169.254.", "192.168.") + tuple(f"172.{octet}." for octet in range(16, 32))

_PLATFORM_PATTERNS = (
    re.compile(
        r"^(?:https?://)?(?:www\.|m\.)?youtube\.com/(?:watch\?v=|shorts/|embed/)"
        r"([A-Za-z0-9_-]{11})(?:[?&#][\w=&%.:-]*)?$"
    ),
    re.compile(r"^(?:https?://)?youtu\.be/([A-Za-z0-9_-]{11})(?:[?#][\w=&%.:-]*)?$"),
    re.compile(r"^([A-Za-z0-9_-]{11})$"),
)

USER_AGENT = "narration-service/1.0 (+media import)"


@dataclass(frozen=True)
class FetchOutcome:
    bytes_written: int
    content_type_guess: str
    source: str


@dataclass(frozen=True)
class PinnedTarget:
    """A validated URL and the address its host was checked against."""

    url: str
    hostname: str
    address: str

    @property
    def host_header(self) -> str:
        return urlsplit(self.url).netloc

    @property
    def connect_url(self) -> str:
        parsed = urlsplit(self.url)
        netloc = f"[{self.address}]" if ":" in self.address else self.address
        if parsed.port is not None:
            netloc = f"{netloc}:{parsed.port}"
        return urlunsplit((parsed.scheme, netloc, parsed.path or "/", parsed.query, ""))


def resolve_host(hostname: str) -> List[str]:
    infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    return sorted({info[4][0] for info in infos})


def is_blocked_address(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return bool(
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


class SecureFetcher:
    """Downloads user-supplied media without reaching internal infrastructure.

    Plain URLs go through httpx with redirects handled by hand so every hop is
    validated. Video-platform references go through an external downloader
    invoked with an argument vector.
    """

    def __init__(
        self,
        max_bytes: int,
        timeout: float = 60.0,
        primary_tool: str = "yt-dlp",
        fallback_tool: str | None = "youtube-dl",
        tool_timeout: float = 300.0,
        max_redirects: int = 1,
        resolver: Callable[[str], List[str]] | None = None,
        runner: Callable[..., subprocess.CompletedProcess] | None = None,
        transport: httpx.BaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.max_bytes = max_bytes
        self.timeout = timeout
        self.primary_tool = primary_tool
        self.fallback_tool = fallback_tool
        self.tool_timeout = tool_timeout
        self.max_redirects = max_redirects
        self.resolver = resolver or resolve_host
        self.runner = runner or subprocess.run
        self._transport = transport
        self.log = logger or logging.getLogger(__name__)

    def validate_url(self, url: str) -> str:
        return self.pin(url).url

    def pin(self, url: str) -> PinnedTarget:
        candidate = (url or "").strip()
        if not candidate:
            raise self._reject(DownloadFailure.INVALID_URL, "URL is required", candidate)
        try:
            parsed = urlsplit(candidate)
            parsed.port  # raises ValueError on a malformed port
        except ValueError:
            raise self._reject(DownloadFailure.INVALID_URL, "Invalid URL", candidate) from None
        if parsed.scheme.lower() not in ALLOWED_SCHEMES:
            raise self._reject(DownloadFailure.INVALID_URL, "Only http and https URLs are allowed", candidate)
        if parsed.username or parsed.password:
            raise self._reject(DownloadFailure.INVALID_URL, "URLs with credentials are not allowed", candidate)
        hostname = (parsed.hostname or "").strip().lower().rstrip(".")
        if not hostname:
            raise self._reject(DownloadFailure.INVALID_URL, "URL has no host", candidate)
        if hostname in BLOCKED_HOSTS or hostname.startswith(BLOCKED_PREFIXES):
            raise self._reject(DownloadFailure.BLOCKED_HOST, "URL host is not allowed", candidate)

        try:
            ipaddress.ip_address(hostname)
            addresses = [hostname]
        except ValueError:
            try:
                addresses = self.resolver(hostname)
            except (OSError, UnicodeError) as exc:
                raise DownloadError(DownloadFailure.NETWORK_ERROR, f"Could not resolve host {hostname}") from exc
        if not addresses or any(is_blocked_address(address) for address in addresses):
            raise self._reject(DownloadFailure.BLOCKED_HOST, "URL host is not allowed", candidate)
        return PinnedTarget(url=candidate, hostname=hostname, address=addresses[0].split("%", 1)[0])

    def fetch(self, url: str, destination: Path | str, max_bytes: int | None = None) -> FetchOutcome:
        limit = max_bytes or self.max_bytes
        destination = Path(destination)
        target = self.pin(url)
        try:
            outcome = self._download(target, destination, limit)
        except DownloadError:
            self._discard(destination)
            raise
        except httpx.HTTPError as exc:
            self._discard(destination)
            self.log.warning("download failed", extra={"target": target.url}, exc_info=True)
            raise DownloadError(DownloadFailure.NETWORK_ERROR, "Unable to download file. Please try again.") from exc
        except BaseException:
            self._discard(destination)
            raise
        self.log.info(
            "download completed",
            extra={"target": outcome.source, "bytes": outcome.bytes_written, "content_type": outcome.content_type_guess},
        )
        return outcome

    def _download(self, pinned: PinnedTarget, destination: Path, limit: int) -> FetchOutcome:
        headers = {"User-Agent": USER_AGENT}
        with httpx.Client(
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
            headers=headers,
        ) as client:
            for hop in range(self.max_redirects + 1):
                target = pinned.url
                # pinned to the address checked in pin()
                with client.stream(
                    "GET",
                    pinned.connect_url,
                    headers={"Host": pinned.host_header},
                    extensions={"sni_hostname": pinned.hostname},
                ) as response:
                    if response.is_redirect:
                        location = response.headers.get("location")
                        if not location or hop >= self.max_redirects:
                            raise DownloadError(
                                DownloadFailure.UPSTREAM_STATUS,
                                "Too many redirects",
                                status_code=response.status_code,
                            )
                        pinned = self.pin(urljoin(target, location))
                        continue
                    if not response.is_success:
                        raise DownloadError(
                            DownloadFailure.UPSTREAM_STATUS,
                            "Unable to download file. Please check the URL and try again.",
                            status_code=response.status_code,
                        )
                    advertised = response.headers.get("content-length")
                    if advertised and advertised.isdigit() and int(advertised) > limit:
                        raise self._too_large(target, limit)
                    written = self._stream_to(response, destination, limit, target)
                    content_type = (response.headers.get("content-type") or "").split(";", 1)[0].strip().lower()
                    if not content_type:
                        content_type = mimetypes.guess_type(urlsplit(target).path)[0] or "application/octet-stream"
                    return FetchOutcome(bytes_written=written, content_type_guess=content_type, source=target)
        raise DownloadError(DownloadFailure.UPSTREAM_STATUS, "Too many redirects")  # pragma: no cover

    def _stream_to(self, response: httpx.Response, destination: Path, limit: int, target: str) -> int:
        written = 0
        destination.parent.mkdir(parents=True, exist_ok=True)
        with open(destination, "wb") as handle:
            for chunk in response.iter_bytes():
                if not chunk:
                    continue
                written += len(chunk)
                if written > limit:
                    raise self._too_large(target, limit)
                handle.write(chunk)
        if destination.stat().st_size > limit:
            raise self._too_large(target, limit)
        return written

    def parse_platform_reference(self, reference: str) -> str:
        candidate = (reference or "").strip()
        for pattern in _PLATFORM_PATTERNS:
            match = pattern.match(candidate)
            if match:
                return match.group(1)
        raise self._reject(DownloadFailure.INVALID_URL, "Invalid YouTube URL", candidate)

    def download_platform_audio(
        self,
        reference: str,
        destination: Path | str,
        max_bytes: int | None = None,
    ) -> FetchOutcome:
        limit = max_bytes or self.max_bytes
        destination = Path(destination)
        video_id = self.parse_platform_reference(reference)
        canonical = f"https://www.youtube.com/watch?v={video_id}"
        output_template = str(destination.with_suffix("")) + ".%(ext)s"
        try:
            for tool in (self.primary_tool, self.fallback_tool):
                if not tool:
                    continue
                args = [
                    tool,
                    "-x",
                    "--audio-format",
                    "mp3",
                    "--audio-quality",
                    "0",
                    "--no-playlist",
                    "--max-filesize",
                    str(limit),
                    "-o",
                    output_template,
                    "--",
                    canonical,
                ]
                if self._run_tool(tool, args, video_id) and self._locate_output(destination):
                    break
            else:
                raise DownloadError(
                    DownloadFailure.TOOL_FAILURE,
                    "Unable to import from YouTube. Please check the URL and try again.",
                )
            size = destination.stat().st_size
            if size > limit:
                raise self._too_large(canonical, limit)
        except BaseException:
            self._discard(destination)
            raise
        self.log.info("platform download completed", extra={"video_id": video_id, "bytes": size})
        return FetchOutcome(bytes_written=size, content_type_guess="audio/mpeg", source=canonical)

    def _run_tool(self, tool: str, args: List[str], video_id: str) -> bool:
        try:
            completed = self.runner(args, capture_output=True, text=True, timeout=self.tool_timeout, check=False)
        except (OSError, subprocess.TimeoutExpired) as exc:
            self.log.warning("downloader could not run", extra={"tool": tool, "video_id": video_id, "error": str(exc)})
            return False
        if completed.returncode != 0:
            self.log.warning(
                "downloader failed",
                extra={
                    "tool": tool,
                    "video_id": video_id,
                    "returncode": completed.returncode,
                    "stderr": (completed.stderr or "")[-2000:],
                },
            )
            return False
        return True

    def _locate_output(self, destination: Path) -> bool:
        if destination.exists():
            return True
        for candidate in sorted(destination.parent.glob(f"{destination.stem}.*")):
            if candidate.suffix in (".part", ".ytdl") or not candidate.is_file():
                continue
            candidate.rename(destination)
            return True
        self.log.warning("downloader reported success without output", extra={"path": str(destination)})
        return False

    def _too_large(self, target: str, limit: int) -> DownloadError:
        return self._reject(DownloadFailure.TOO_LARGE, f"File exceeds the {limit} byte limit", target)

    def _reject(self, reason: DownloadFailure, message: str, target: str) -> DownloadError:
        self.log.warning("download target rejected", extra={"target": target, "reason": reason.value})
        return DownloadError(reason, message)

    def _discard(self, destination: Path) -> None:
        try:
            destination.unlink(missing_ok=True)
        except OSError:  # pragma: no cover
            self.log.warning("partial download cleanup failed", extra={"path": str(destination)})
