import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from utils import ensure_dir

STEAMCMD_TIMEOUT_SECONDS = 30 * 60
OUTPUT_TAIL_CHARS = 4000

_ANSI_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
_DOWNLOAD_FAILED_RE = re.compile(
    r"ERROR!\s+Download item\s+\d+\s+failed\s+\([^)]+\)\.",
    flags=re.IGNORECASE,
)
_RETRYABLE_MARKERS = ("failed (failure)", "timeout", "failed (busy)")
_FATAL_MARKERS = ("access denied", "file not found", "no subscription")


@dataclass(frozen=True)
class SteamDownloadResult:
    ok: bool
    reason: str | None = None
    retryable: bool = False


def workshop_content_dir(steam_root: Path, app_id: int, item_id: int) -> Path:
    return steam_root / "steamapps" / "workshop" / "content" / str(app_id) / str(item_id)


def build_download_command(
    steamcmd_path: Path, steam_root: Path, app_id: int, item_id: int
) -> list[str]:
    return [
        str(steamcmd_path),
        "+force_install_dir",
        str(steam_root),
        "+login",
        "anonymous",
        "+workshop_download_item",
        str(app_id),
        str(item_id),
        "validate",
        "+quit",
    ]


def _extract_steamcmd_error(output: str) -> str | None:
    cleaned = _ANSI_RE.sub("", output or "").replace("\r", "\n")
    match = _DOWNLOAD_FAILED_RE.search(" ".join(cleaned.split()))
    if match:
        return match.group(0)
    error_lines = (line for line in cleaned.splitlines() if "ERROR!" in line)
    first = next(error_lines, None)
    return " ".join(first.split()) if first else None


def _is_retryable_reason(reason: str | None, returncode: int) -> bool:
    normalized = (reason or "").lower()
    if any(marker in normalized for marker in _RETRYABLE_MARKERS):
        return True
    if any(marker in normalized for marker in _FATAL_MARKERS):
        return False
    return returncode != 0


def _interpret_output(item_id: int, output: str, returncode: int) -> SteamDownloadResult:
    error = _extract_steamcmd_error(output)
    if returncode == 0 and error is None:
        return SteamDownloadResult(True)
    reason = error or f"steamcmd exit code {returncode}"
    logging.error("SteamCMD failed for item %s: %s", item_id, reason)
    tail = _ANSI_RE.sub("", output[-OUTPUT_TAIL_CHARS:])
    if tail:
        logging.debug("SteamCMD output tail for %s:\n%s", item_id, tail)
    return SteamDownloadResult(False, reason, _is_retryable_reason(reason, returncode))


def download_workshop_item(
    steamcmd_path: Path,
    steam_root: Path,
    app_id: int,
    item_id: int,
    timeout: int = STEAMCMD_TIMEOUT_SECONDS,
) -> SteamDownloadResult:
    """Install one workshop item into ``steam_root`` with an anonymous steamcmd login."""
    if not steamcmd_path.exists():
        logging.error("steamcmd not found at %s", steamcmd_path)
        return SteamDownloadResult(False, f"steamcmd not found at {steamcmd_path}")
    ensure_dir(steam_root)
    logging.info("SteamCMD download: app_id=%s item=%s", app_id, item_id)
    try:
        completed = subprocess.run(
            build_download_command(steamcmd_path, steam_root, app_id, item_id),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logging.error("SteamCMD timed out after %ss for item %s", timeout, item_id)
        return SteamDownloadResult(False, "steamcmd timeout", retryable=True)
    except OSError as exc:
        logging.error("SteamCMD could not start for item %s: %s", item_id, exc)
        return SteamDownloadResult(False, str(exc))
    return _interpret_output(item_id, completed.stdout or "", completed.returncode)
