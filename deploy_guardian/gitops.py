"""
Thin wrapper around the git CLI for the GitOps manifest repository.

All git operations use :func:`subprocess.run` with a timeout; no GitPython
dependency.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from deploy_guardian.exceptions import GitCommandError


logger = logging.getLogger(__name__)

_FIELD_SEP = '\x1f'

# stderr fragments git prints when a push loses a race with another writer
_REJECTION_MARKERS = (
    'non-fast-forward',
    'fetch first',
    '[rejected]',
    'failed to push some refs',
    'stale info',
    'cannot lock ref',
)


@dataclass(frozen=True)
class CommitInfo:
    sha: str
    timestamp: float
    subject: str

    @property
    def short_sha(self) -> str:
        return self.sha[:7]


def is_push_rejection(error: GitCommandError) -> bool:
    """True when a failed push was rejected because the remote moved on"""
    stderr = error.stderr.lower()
    return any(marker in stderr for marker in _REJECTION_MARKERS)


class GitRepository:
    """
    A local checkout of a git repository.

    Args:
        path: Root directory of the working copy
        timeout: Seconds before any single git command is abandoned
        author_name: Identity used for commits made by the controller
        author_email: Email used for commits made by the controller
    """

    def __init__(
        self,
        path: Union[str, Path],
        timeout: float = 30.0,
        author_name: str = 'deploy-guardian',
        author_email: str = 'deploy-guardian@users.noreply.github.com'
    ):
        self.path = Path(path).resolve()
        self.timeout = timeout
        self.author_name = author_name
        self.author_email = author_email

    def run(
        self,
        *args: str,
        check: bool = True,
        env: Optional[Dict[str, str]] = None
    ) -> subprocess.CompletedProcess:
        """Execute a git command in the working copy"""
        cmd = ['git', *args]
        logger.debug(f"git {' '.join(args)} (cwd={self.path})")

        run_env = None
        if env:
            run_env = dict(os.environ)
            run_env.update(env)

        try:
            result = subprocess.run(
                cmd,
                cwd=self.path,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=run_env
            )
        except subprocess.TimeoutExpired as e:
            raise GitCommandError(args, None, f"timed out after {self.timeout}s") from e
        except OSError as e:
            raise GitCommandError(args, None, str(e)) from e

        if check and result.returncode != 0:
            raise GitCommandError(args, result.returncode, result.stderr)
        return result

    def head(self) -> str:
        return self.rev_parse('HEAD')

    def rev_parse(self, ref: str) -> str:
        return self.run('rev-parse', '--verify', f'{ref}^{{commit}}').stdout.strip()

    def log(
        self,
        revision: Optional[str] = None,
        paths: Sequence[str] = (),
        limit: Optional[int] = None
    ) -> List[CommitInfo]:
        """Commits reachable from ``revision`` (default HEAD), newest first"""
        args = ['log', f'--format=%H{_FIELD_SEP}%ct{_FIELD_SEP}%s']
        if limit is not None:
            args.append(f'--max-count={limit}')
        if revision:
            args.append(revision)
        if paths:
            args.append('--')
            args.extend(paths)

        commits = []
        for line in self.run(*args).stdout.splitlines():
            if not line.strip():
                continue
            sha, timestamp, subject = line.split(_FIELD_SEP, 2)
            commits.append(CommitInfo(sha=sha, timestamp=float(timestamp), subject=subject))
        return commits

    def show(self, commit: str, path: str) -> str:
        """Content of ``path`` as of ``commit``"""
        return self.run('show', f'{commit}:{path}').stdout

    def commit(self, paths: Sequence[str], message: str) -> str:
        """Stage ``paths``, commit them and return the new commit id"""
        self.run('add', '--', *paths)
        identity = {
            'GIT_AUTHOR_NAME': self.author_name,
            'GIT_AUTHOR_EMAIL': self.author_email,
            'GIT_COMMITTER_NAME': self.author_name,
            'GIT_COMMITTER_EMAIL': self.author_email,
        }
        self.run('commit', '--no-verify', '-m', message, '--', *paths, env=identity)
        return self.head()

    def restore(self, path: str) -> None:
        """Reset ``path`` in the index and working tree to its HEAD content"""
        self.run('checkout', 'HEAD', '--', path)

    def fetch(self, remote: str, branch: str) -> None:
        self.run('fetch', remote, branch)

    def reset_hard(self, ref: str) -> None:
        self.run('reset', '--hard', ref)

    def push(self, remote: str, branch: str) -> None:
        self.run('push', remote, f'HEAD:{branch}')
