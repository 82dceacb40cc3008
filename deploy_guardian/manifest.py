"""
Declarative manifest store and the rollback write path.

Each environment declares its image tag in a YAML values file inside the
GitOps repository. ``ManifestMutator`` is the only code path that rewrites
that tag for a rollback.
"""

import json
import logging
import threading
from typing import Any, Dict, List, Optional

import yaml

from deploy_guardian.exceptions import (
    GitCommandError,
    PersistenceError,
    WriteConflict
)
from deploy_guardian.gitops import GitRepository, is_push_rejection


logger = logging.getLogger(__name__)


def extract_tag(document: str, key_path: str) -> Optional[str]:
    """Return the value at dotted ``key_path`` in a YAML document, if any"""
    data = yaml.safe_load(document) or {}
    node: Any = data
    for key in key_path.split('.'):
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    if node is None or isinstance(node, (dict, list)):
        return None
    return str(node)


def _mapping_value(node: yaml.MappingNode, key: str) -> Optional[yaml.Node]:
    for key_node, value_node in node.value:
        if isinstance(key_node, yaml.ScalarNode) and key_node.value == key:
            return value_node
    return None


def _render_scalar(value: str, style: Optional[str]) -> str:
    if style == "'":
        return "'" + value.replace("'", "''") + "'"
    if style == '"':
        return json.dumps(value)
    try:
        plain_ok = yaml.safe_load(value) == value
    except yaml.YAMLError:
        plain_ok = False
    return value if plain_ok else json.dumps(value)


def _set_path(document: str, keys: List[str], tag: str) -> str:
    # Structural change; comments cannot be kept when keys are created
    data = yaml.safe_load(document) or {}
    if not isinstance(data, dict):
        raise PersistenceError("Manifest root is not a mapping")

    node: Dict = data
    for key in keys[:-1]:
        child = node.get(key)
        if child is None:
            child = node[key] = {}
        if not isinstance(child, dict):
            raise PersistenceError(f"Manifest key '{key}' is not a mapping")
        node = child
    node[keys[-1]] = tag

    return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def replace_tag(document: str, key_path: str, tag: str) -> str:
    """
    Return the YAML document with dotted ``key_path`` set to ``tag``

    When the key exists only its scalar is rewritten in place, so comments
    and formatting of the values file are kept.
    """
    keys = key_path.split('.')
    try:
        node = yaml.compose(document)
    except yaml.YAMLError as e:
        raise PersistenceError(f"Manifest is not valid YAML: {e}") from e

    for key in keys:
        if node is None:
            break
        if not isinstance(node, yaml.MappingNode):
            raise PersistenceError(f"Manifest key '{key}' has no mapping parent")
        node = _mapping_value(node, key)

    if node is None or node.tag == 'tag:yaml.org,2002:null':
        return _set_path(document, keys, tag)
    if not isinstance(node, yaml.ScalarNode):
        raise PersistenceError(f"Manifest key '{key_path}' is not a scalar")

    start, end = node.start_mark.index, node.end_mark.index
    return document[:start] + _render_scalar(tag, node.style) + document[end:]


class ManifestStore:
    """
    Read/write/commit access to per-environment values files in a git checkout
    """

    def __init__(
        self,
        repo: GitRepository,
        values_file_template: str = 'environments/{environment}/values.yaml',
        tag_key_path: str = 'image.tag',
        remote: str = 'origin',
        branch: str = 'main',
        push: bool = True
    ):
        self.repo = repo
        self.values_file_template = values_file_template
        self.tag_key_path = tag_key_path
        self.remote = remote
        self.branch = branch
        self.push_enabled = push
        # Serialises read-modify-commit cycles on the shared working copy
        self.lock = threading.Lock()

    def path_for(self, environment: str) -> str:
        return self.values_file_template.format(environment=environment)

    def _file(self, environment: str):
        return self.repo.path / self.path_for(environment)

    def refresh(self) -> None:
        """Move the working copy to the remote head so writes start from fresh state"""
        if not self.push_enabled:
            return
        try:
            self.repo.fetch(self.remote, self.branch)
            self.repo.reset_hard(f'{self.remote}/{self.branch}')
        except GitCommandError as e:
            raise PersistenceError(f"Cannot refresh manifest repository: {e}") from e

    def write_tag(self, environment: str, tag: str) -> None:
        path = self._file(environment)
        try:
            document = path.read_text(encoding='utf-8') if path.exists() else ''
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(replace_tag(document, self.tag_key_path, tag), encoding='utf-8')
        except OSError as e:
            raise PersistenceError(f"Cannot write manifest {path}: {e}") from e

    def commit(self, environment: str, message: str) -> str:
        """
        Commit the environment's values file and publish it

        Raises:
            WriteConflict: the remote rejected the push because it moved on
            PersistenceError: any other failure to record the change
        """
        try:
            commit_id = self.repo.commit([self.path_for(environment)], message)
        except GitCommandError as e:
            raise PersistenceError(f"Commit failed: {e}") from e

        if self.push_enabled:
            try:
                self.repo.push(self.remote, self.branch)
            except GitCommandError as e:
                if is_push_rejection(e):
                    raise WriteConflict(f"Push rejected for {commit_id[:7]}: {e.stderr.strip()}") from e
                raise PersistenceError(f"Push failed: {e}") from e

        return commit_id

    def committed_tag(self, environment: str) -> Optional[str]:
        """Tag declared for the environment in the HEAD commit"""
        try:
            document = self.repo.show('HEAD', self.path_for(environment))
        except GitCommandError:
            return None
        return extract_tag(document, self.tag_key_path)

    def discard(self, environment: str) -> None:
        """Drop uncommitted changes to the environment's values file"""
        path = self.path_for(environment)
        try:
            self.repo.restore(path)
        except GitCommandError:
            # Not in HEAD yet, so the file was created by the failed write
            try:
                self.repo.run('rm', '-q', '-f', '--cached', '--ignore-unmatch', '--', path)
                self._file(environment).unlink(missing_ok=True)
            except (GitCommandError, OSError) as e:
                logger.warning(f"Could not discard uncommitted change to {path}: {e}")

    def head(self) -> str:
        try:
            return self.repo.head()
        except GitCommandError as e:
            raise PersistenceError(f"Cannot resolve HEAD: {e}") from e


def rollback_commit_message(environment: str, target_tag: str, reason: str) -> str:
    return (
        f"chore(rollback): {environment} -> {target_tag} [automated]\n"
        f"\n"
        f"Automated rollback of {environment} to {target_tag}.\n"
        f"Reason: {reason}\n"
    )


class ManifestMutator:
    """
    Single writer path for rollback mutations.

    Runs read-mutate-write-commit against a freshly refreshed base and retries
    the whole cycle when a concurrent commit wins the race.
    """

    def __init__(self, store: ManifestStore, max_attempts: int = 3):
        self.store = store
        self.max_attempts = max_attempts

    def apply(self, environment: str, target_tag: str, reason: str = "automated rollback") -> str:
        """
        Declare ``target_tag`` for ``environment`` and durably commit it

        Holds the store lock for the whole cycle so concurrent runs sharing
        one checkout never interleave refresh, write and commit.

        Returns:
            The commit id carrying the change. When the committed manifest
            already declares ``target_tag`` no commit is made and HEAD is
            returned.

        Raises:
            PersistenceError: the change could not be recorded, including
                after ``max_attempts`` write conflicts
        """
        last_conflict: Optional[WriteConflict] = None

        with self.store.lock:
            for attempt in range(1, self.max_attempts + 1):
                self.store.refresh()

                if self.store.committed_tag(environment) == target_tag:
                    commit_id = self.store.head()
                    logger.info(
                        f"Manifest for {environment} already declares {target_tag}, "
                        f"no commit needed"
                    )
                    return commit_id

                try:
                    self.store.write_tag(environment, target_tag)
                    commit_id = self.store.commit(
                        environment,
                        rollback_commit_message(environment, target_tag, reason)
                    )
                except WriteConflict as e:
                    last_conflict = e
                    logger.warning(
                        f"Write conflict on {environment} manifest "
                        f"(attempt {attempt}/{self.max_attempts}): {e}"
                    )
                    continue
                except PersistenceError:
                    self.store.discard(environment)
                    raise

                logger.info(
                    f"Committed rollback of {environment} to {target_tag} as {commit_id[:7]}"
                )
                return commit_id

        raise PersistenceError(
            f"Gave up after {self.max_attempts} write conflicts on {environment}: {last_conflict}"
        )
