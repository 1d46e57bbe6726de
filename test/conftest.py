"""Pytest configuration and fixtures for git-meta-push tests"""

import subprocess
import sys
from pathlib import Path

import pytest

from repo_state import read_repo_state, remap_commit_refs


class TestEnvironment:
    """Test environment with helper functions"""

    def __init__(self, tmp_dir: Path):
        self.tmp = tmp_dir
        self.upstream = tmp_dir / "upstream"
        self.owner = tmp_dir / "owner"
        self.seed = tmp_dir / "seed"
        self.test_home = tmp_dir / "home"

        # physical -> logical, and back
        self.commit_map = {}
        self.reverse_commit_map = {}

    def run(self, cmd, cwd=None, check=True, capture_output=True):
        """Run a shell command"""
        return subprocess.run(
            cmd,
            shell=isinstance(cmd, str),
            cwd=cwd,
            capture_output=capture_output,
            text=True,
            check=check,
        )

    def git(self, args, cwd):
        """Run git and return its stripped output"""
        return self.run(['git'] + args, cwd=cwd).stdout.strip()

    def sha(self, label):
        return self.reverse_commit_map[label]

    def label(self, sha):
        return self.commit_map.get(sha, sha)

    def record(self, label, cwd):
        """Remember HEAD of cwd as commit `label`"""
        sha = self.git(['rev-parse', 'HEAD'], cwd=cwd)
        self.commit_map[sha] = label
        self.reverse_commit_map[label] = sha
        return sha

    def commit(self, label, cwd):
        """Commit a new file named after `label`, along with anything staged"""
        cwd = Path(cwd)
        (cwd / f'file-{label}').write_text(f"commit {label}\n")
        self.git(['add', f'file-{label}'], cwd=cwd)
        self.git(['commit', '--quiet', '-m', f'commit {label}'], cwd=cwd)
        return self.record(label, cwd)

    def create_upstream(self, name, label):
        """Create bare repo `name` whose master holds the single commit `label`"""
        work = self.seed / name
        work.mkdir(parents=True)
        self.git(['init', '--quiet'], cwd=work)
        self.git(['symbolic-ref', 'HEAD', 'refs/heads/master'], cwd=work)
        self.commit(label, work)

        bare = self.upstream / name
        self.git(['init', '--quiet', '--bare', str(bare)], cwd=self.tmp)
        self.git(['symbolic-ref', 'HEAD', 'refs/heads/master'], cwd=bare)
        self.git(['push', '--quiet', str(bare), 'master:refs/heads/master'], cwd=work)
        return bare

    def clone(self, name, dest=None):
        """Clone upstream `name` into the owner directory"""
        path = self.owner / (dest or name)
        self.git(['clone', '--quiet', str(self.upstream / name), str(path)], cwd=self.tmp)
        return path

    def record_submodule(self, meta, path, url, label):
        """Stage a submodule at `path` pointing at commit `label` (or a raw sha)"""
        sha = self.reverse_commit_map.get(label, label)
        self.git(['config', '--file', '.gitmodules', f'submodule.{path}.path', path], cwd=meta)
        self.git(['config', '--file', '.gitmodules', f'submodule.{path}.url', url], cwd=meta)
        self.git(['add', '.gitmodules'], cwd=meta)
        self.git(['update-index', '--add', '--cacheinfo', f'160000,{sha},{path}'], cwd=meta)

    def open_submodule(self, meta, path, name, label):
        """Check out upstream `name` at commit `label` as submodule `path`"""
        sub = Path(meta) / path
        self.git(['clone', '--quiet', str(self.upstream / name), str(sub)], cwd=self.tmp)
        self.git(['checkout', '--quiet', '--detach', self.sha(label)], cwd=sub)
        return sub

    def repo(self, name):
        """Path of owner clone `name`, or else of upstream `name`"""
        owned = self.owner / name
        return owned if owned.exists() else self.upstream / name

    def state(self, name):
        return read_repo_state(self.repo(name), self.commit_map)


@pytest.fixture(scope='function')
def env(tmp_path, monkeypatch):
    """Setup test environment for each test"""
    test_env = TestEnvironment(tmp_path)

    # Set up temporary home directory for git config
    test_env.test_home.mkdir()
    monkeypatch.setenv('HOME', str(test_env.test_home))
    monkeypatch.setenv('GIT_CONFIG_GLOBAL', str(test_env.test_home / '.gitconfig'))
    monkeypatch.setenv('GIT_CONFIG_SYSTEM', '/dev/null')
    for var in ['GIT_META_QUIET', 'GIT_META_VERBOSE', 'GIT_META_DEBUG']:
        monkeypatch.delenv(var, raising=False)

    for key, value in [
        ('user.name', 'Test User'),
        ('user.email', 'test@example.com'),
        ('init.defaultBranch', 'master'),
        ('advice.detachedHead', 'false'),
        ('color.ui', 'false'),
    ]:
        subprocess.run(['git', 'config', '--global', key, value], check=True)

    test_env.upstream.mkdir()
    test_env.owner.mkdir()
    test_env.seed.mkdir()

    yield test_env


# Assertion helpers
def assert_repo_states(env, expected):
    """Assert that each named repo matches its expected state.

    Expected states name commits by label, including in the names of
    'commits/<label>' refs.
    """
    expected = remap_commit_refs(expected, env.reverse_commit_map)
    for name, state in expected.items():
        actual = env.state(name)
        assert actual == state, (
            f"Repo '{name}' mismatch.\nExpected: {state}\nActual: {actual}"
        )


def remote_ref(env, name, ref):
    """Label of the commit `ref` points at in repo `name`, None if absent"""
    result = subprocess.run(
        ['git', 'rev-parse', '--verify', '--quiet', ref],
        cwd=env.repo(name),
        capture_output=True,
        text=True,
        check=False,
    )
    sha = result.stdout.strip()
    return env.label(sha) if sha else None


def pin_refs(env, name):
    """All 'refs/commits/*' of repo `name`, as labels"""
    result = subprocess.run(
        ['git', 'for-each-ref', '--format=%(refname)', 'refs/commits/'],
        cwd=env.repo(name),
        capture_output=True,
        text=True,
        check=True,
    )
    return sorted(
        env.label(ref[len('refs/commits/'):]) for ref in result.stdout.split()
    )


def git_meta_push(args, cwd, check=True):
    """Run the git meta-push command"""
    script = Path(__file__).parent.parent / 'lib' / 'git_meta_push.py'
    return subprocess.run(
        [sys.executable, str(script)] + args,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=check,
    )


def assert_output_matches(actual, expected, description=""):
    """Assert that output matches expected value"""
    assert actual == expected, f"{description}\nExpected: {expected}\nActual: {actual}"


def assert_output_contains(output, pattern, description=""):
    """Assert that output contains pattern"""
    assert pattern in output, (
        f"{description}\nPattern '{pattern}' not found in:\n{output}"
    )
