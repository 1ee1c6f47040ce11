"""
Evidence capture for result attachments.

A result points at a file inside the project. At attach time we record what
the file looked like (sha256, mtime) and, if the project is a git checkout,
which commit HEAD was on. These are read-only observations taken before the
lock is acquired.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional

from ergo.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_SUMMARY_LENGTH = 120


@dataclass
class ResultEvidence:
    path: str
    sha256: str
    mtime: datetime
    git_commit: Optional[str] = None


def _invalid(field: str, reason: str) -> ValidationError:
    return ValidationError('validation_failed', 'invalid result', invalid={field: reason})


def validate_summary(summary: Optional[str]) -> str:
    """
    Check a result summary: non-empty, one line, at most 120 characters.

    Returns:
        The stripped summary
    """
    text = (summary or '').strip()
    if not text:
        raise _invalid('result_summary', 'cannot be empty')
    if '\n' in text or '\r' in text:
        raise _invalid('result_summary', 'must be a single line')
    if len(text) > MAX_SUMMARY_LENGTH:
        raise _invalid('result_summary', f'must be at most {MAX_SUMMARY_LENGTH} characters')
    return text


def normalize_result_path(repo_dir: Path, ergo_dir: Path, raw_path: str) -> Path:
    """
    Resolve a project-relative path, rejecting anything outside the project or
    inside the data directory.

    Returns:
        The absolute, resolved path of the file
    """
    text = (raw_path or '').strip()
    if not text:
        raise _invalid('result_path', 'cannot be empty')
    if os.path.isabs(text) or text.startswith(('/', '\\')) or os.path.splitdrive(text)[0]:
        raise _invalid('result_path', 'must be relative to the project root')

    normalized = os.path.normpath(text)
    if normalized == '..' or normalized.startswith('..' + os.sep) or normalized.startswith('../'):
        raise _invalid('result_path', 'must not escape the project root')

    root = Path(repo_dir).resolve()
    full = (root / normalized).resolve()
    try:
        full.relative_to(root)
    except ValueError:
        raise _invalid('result_path', 'must not escape the project root') from None

    data_dir = Path(ergo_dir).resolve()
    if full == data_dir or data_dir in full.parents:
        raise _invalid('result_path', 'must not point inside .ergo')

    if not full.exists():
        raise _invalid('result_path', f'file not found: {text}')
    if full.is_dir():
        raise _invalid('result_path', 'must be a file, not a directory')
    return full


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            digest.update(chunk)
    return digest.hexdigest()


# ============================================================================
# Git HEAD (best effort, no git binary required)
# ============================================================================

def _git_dir(repo_dir: Path) -> Optional[Path]:
    dot_git = repo_dir / '.git'
    if dot_git.is_dir():
        return dot_git
    if dot_git.is_file():
        # Worktrees and submodules: "gitdir: <path>"
        content = dot_git.read_text().strip()
        if content.startswith('gitdir:'):
            target = Path(content[len('gitdir:'):].strip())
            return target if target.is_absolute() else (repo_dir / target)
    return None


def _packed_ref(git_dir: Path, ref: str) -> Optional[str]:
    packed = git_dir / 'packed-refs'
    if not packed.is_file():
        return None
    for line in packed.read_text().splitlines():
        if not line or line.startswith(('#', '^')):
            continue
        sha, _, name = line.partition(' ')
        if name.strip() == ref:
            return sha.strip()
    return None


def git_head(repo_dir: Path) -> Optional[str]:
    """Commit HEAD points at, or None when it cannot be determined."""
    try:
        git_dir = _git_dir(Path(repo_dir))
        if git_dir is None:
            return None
        head = (git_dir / 'HEAD').read_text().strip()
        if not head.startswith('ref:'):
            return head or None
        ref = head[len('ref:'):].strip()
        loose = git_dir / PurePosixPath(ref)
        if loose.is_file():
            return loose.read_text().strip() or None
        # Linked worktrees keep branch refs in the common dir.
        common = git_dir / 'commondir'
        if common.is_file():
            common_dir = (git_dir / common.read_text().strip()).resolve()
            loose = common_dir / PurePosixPath(ref)
            if loose.is_file():
                return loose.read_text().strip() or None
            return _packed_ref(common_dir, ref)
        return _packed_ref(git_dir, ref)
    except OSError as e:
        logger.debug("could not read git HEAD in %s: %s", repo_dir, e)
        return None


def capture(repo_dir: Path, ergo_dir: Path, raw_path: str) -> ResultEvidence:
    """Validate `raw_path` and snapshot the file it names."""
    full = normalize_result_path(repo_dir, ergo_dir, raw_path)
    root = Path(repo_dir).resolve()
    stat = full.stat()
    return ResultEvidence(
        path=full.relative_to(root).as_posix(),
        sha256=_sha256(full),
        mtime=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        git_commit=git_head(root),
    )


def file_url(repo_dir: Path, rel_path: str) -> str:
    """file:// URL for a stored result path, derived at read time."""
    return (Path(repo_dir).resolve() / rel_path).as_uri()
