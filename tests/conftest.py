import logging
import subprocess
from pathlib import Path

import pytest

from deploy_guardian.gitops import GitRepository
from deploy_guardian.manifest import ManifestStore


def _git(*args, cwd):
    subprocess.run(['git', *args], cwd=cwd, check=True, capture_output=True, text=True)


def write_values(repo: GitRepository, environment: str, tag: str, message: str = None) -> str:
    """Declare ``tag`` for ``environment`` and commit it, returning the commit id"""
    path = Path(repo.path) / 'environments' / environment / 'values.yaml'
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        f"replicaCount: 2\nimage:\n  repository: ghcr.io/acme/backend\n  tag: {tag}\n",
        encoding='utf-8'
    )
    return repo.commit(
        [f'environments/{environment}/values.yaml'],
        message or f'deploy({environment}): {tag}'
    )


@pytest.fixture(autouse=True)
def reset_package_logger():
    """setup_logging() detaches the package logger from root; undo that for caplog"""
    yield
    package_logger = logging.getLogger('deploy_guardian')
    package_logger.handlers.clear()
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)


@pytest.fixture
def local_repo(tmp_path):
    """A standalone git working copy with no remote"""
    path = tmp_path / 'gitops'
    path.mkdir()
    _git('init', '-q', cwd=path)
    _git('symbolic-ref', 'HEAD', 'refs/heads/main', cwd=path)
    return GitRepository(path, timeout=30)


@pytest.fixture
def remote_pair(tmp_path):
    """A bare remote plus a clone that has published two prod deployments to it"""
    remote = tmp_path / 'remote.git'
    remote.mkdir()
    _git('init', '-q', '--bare', cwd=remote)
    _git('symbolic-ref', 'HEAD', 'refs/heads/main', cwd=remote)

    clone_path = tmp_path / 'clone'
    _git('clone', '-q', str(remote), str(clone_path), cwd=tmp_path)
    _git('symbolic-ref', 'HEAD', 'refs/heads/main', cwd=clone_path)

    clone = GitRepository(clone_path, timeout=30)
    write_values(clone, 'prod', 'main-abc1233')
    write_values(clone, 'prod', 'main-abc1234')
    _git('push', '-q', 'origin', 'HEAD:main', cwd=clone_path)

    return remote, clone


@pytest.fixture
def local_store(local_repo):
    return ManifestStore(local_repo, push=False)


def second_clone(remote: Path, dest: Path) -> GitRepository:
    _git('clone', '-q', '--branch', 'main', str(remote), str(dest), cwd=dest.parent)
    return GitRepository(dest, timeout=30)
