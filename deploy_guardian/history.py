"""
Version history and changelog, both read from git.

The version record of an environment is the commit history of its values
file: every revision that changed the declared tag is one entry.
"""

import logging
import re
from typing import List, Optional

import yaml

from deploy_guardian.exceptions import GitCommandError, PersistenceError
from deploy_guardian.gitops import GitRepository
from deploy_guardian.manifest import ManifestStore, extract_tag
from deploy_guardian.models import ChangelogEntry, VersionEntry, VersionRecord


logger = logging.getLogger(__name__)

# Tags produced by the build pipeline look like "<branch>-<short sha>"
_TAG_SHA = re.compile(r'-([0-9a-f]{7,40})$')


class VersionHistory:
    """Ordered record of previously declared tags per environment"""

    def __init__(self, store: ManifestStore, max_revisions: int = 200):
        self.store = store
        self.max_revisions = max_revisions

    def entries(self, environment: str) -> VersionRecord:
        """
        Tag history for ``environment``, oldest first

        Revisions that touched the values file without changing the tag are
        folded into the entry that introduced the tag. The working copy is
        refreshed from the remote first so deployments pushed by the
        pipeline since the last read are part of the record.
        """
        path = self.store.path_for(environment)
        repo = self.store.repo

        with self.store.lock:
            self.store.refresh()
            try:
                commits = repo.log(paths=[path], limit=self.max_revisions)
            except GitCommandError as e:
                raise PersistenceError(f"Cannot read history of {path}: {e}") from e

            record: VersionRecord = []
            for info in reversed(commits):
                try:
                    tag = extract_tag(repo.show(info.sha, path), self.store.tag_key_path)
                except GitCommandError:
                    # File deleted in this revision
                    tag = None
                except yaml.YAMLError as e:
                    logger.warning(f"Skipping unparsable revision {info.short_sha} of {path}: {e}")
                    continue

                if not tag:
                    continue
                if record and record[-1].tag == tag:
                    continue
                record.append(VersionEntry(tag=tag, commit=info.sha, timestamp=info.timestamp))

        logger.debug(f"Loaded {len(record)} version entries for {environment}")
        return record

    def entry_before(self, environment: str, tag: str) -> Optional[VersionEntry]:
        """Entry immediately preceding the latest entry declaring ``tag``"""
        record = self.entries(environment)
        for index in range(len(record) - 1, -1, -1):
            if record[index].tag == tag:
                return record[index - 1] if index > 0 else None
        return None


def source_ref_for_tag(tag: str) -> Optional[str]:
    """Short commit id embedded in a pipeline tag such as ``main-abc1234``"""
    match = _TAG_SHA.search(tag or '')
    return match.group(1) if match else None


class ChangelogBuilder:
    """Summarises source commits shipped by a deployment"""

    def __init__(self, repo: GitRepository, limit: int = 10):
        self.repo = repo
        self.limit = limit

    def _resolve(self, ref: Optional[str]) -> Optional[str]:
        if not ref:
            return None
        try:
            return self.repo.rev_parse(ref)
        except GitCommandError:
            return None

    def build(self, current_ref: Optional[str], previous_ref: Optional[str] = None) -> List[ChangelogEntry]:
        """
        Commits in ``previous_ref..current_ref``, newest first, capped at ``limit``.

        Falls back to the most recent commits up to ``current_ref`` (or HEAD)
        when there is no usable previous marker. Any git failure yields an
        empty changelog; notifications must not depend on it.
        """
        current = self._resolve(current_ref) or self._resolve('HEAD')
        if current is None:
            return []

        previous = self._resolve(previous_ref)
        revision = f"{previous}..{current}" if previous else current

        try:
            commits = self.repo.log(revision=revision, limit=self.limit)
        except GitCommandError as e:
            logger.warning(f"Cannot build changelog for {revision}: {e}")
            return []

        return [
            ChangelogEntry(short_commit=c.short_sha, subject=c.subject)
            for c in commits
        ]
