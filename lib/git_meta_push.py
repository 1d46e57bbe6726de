#!/usr/bin/env python3
"""
git-meta-push - Publish a meta-repository branch with pinned submodules

Pushes one branch of a meta-repository to its remote. Before the remote
branch moves, every submodule commit referenced by the newly published
history is pinned on the submodule's own remote under
'refs/commits/<sha>', so that it stays fetchable no matter what later
happens to the submodule's branches.
"""

import sys
import os
import subprocess
import argparse
import posixpath
import re
import shutil
from typing import Callable, Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field

VERSION = "0.1.0"
REQUIRED_GIT_VERSION = "2.23.0"
GITLINK_MODE = '160000'
COMMIT_REF_PREFIX = 'refs/commits/'


class GitMetaError(Exception):
    """Base exception for git-meta errors"""

    def __init__(self, message, code=1):
        self.message = message
        self.code = code
        super().__init__(self.message)


class UnknownRefError(GitMetaError):
    """The source of a push does not resolve to a commit"""


class UnresolvableRemoteError(GitMetaError):
    """No URL can be determined for a remote"""


class NonFastForwardError(GitMetaError):
    """The push would rewind the remote branch and was not forced"""


class SubmoduleTransferError(GitMetaError):
    """Pinning submodule commits on their remote failed"""


class RefUpdateError(GitMetaError):
    """The remote refused the final update of the target ref"""


@dataclass
class Flags:
    """Command-line flags"""

    force: bool = False
    quiet: bool = False
    verbose: bool = False
    debug: bool = False


class GitRunner:
    """Simplified git command execution against one repository"""

    def __init__(self, path='.', verbose=False, debug=False, quiet=False):
        self.path = str(path)
        self.verbose = verbose
        self.debug = debug
        self.quiet = quiet

    def at(self, path) -> 'GitRunner':
        """Runner for another repository with the same output settings"""
        return GitRunner(path, verbose=self.verbose, debug=self.debug, quiet=self.quiet)

    def run(
        self, args: List[str], capture=False, fail=True, check=False, input=None
    ) -> Optional[str]:
        """Run git command"""
        cmd = ['git', '-C', self.path] + args
        if self.debug:
            self.log(f">>> {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, input=input, check=False
            )
        except OSError as e:
            raise GitMetaError(f"Command failed: '{' '.join(cmd)}'.\n{e}")

        if result.returncode != 0:
            if fail:
                raise GitMetaError(
                    f"Command failed: '{' '.join(cmd)}'.\n{result.stderr}"
                )
            return None
        if check:
            return result.stdout.strip()
        return result.stdout if capture else None

    def config_get(self, key: str, default=None) -> Optional[str]:
        """Get value from the repository config"""
        result = self.run(['config', '--get', key], check=True, fail=False)
        return result if result else default

    def rev_parse(self, rev: str) -> Optional[str]:
        """Resolve a revision to a commit id, None if it does not resolve"""
        if not rev:
            return None
        result = self.run(
            ['rev-parse', '--verify', '--quiet', f'{rev}^{{commit}}'],
            check=True,
            fail=False,
        )
        return result or None

    def symbolic_full_name(self, rev: str) -> Optional[str]:
        """Full ref name for rev, None if rev is not a ref"""
        result = self.run(
            ['rev-parse', '--symbolic-full-name', rev], check=True, fail=False
        )
        return result or None

    def commit_exists(self, commit: str) -> bool:
        """Check if the commit object is present locally"""
        result = self.run(
            ['cat-file', '-e', f'{commit}^{{commit}}'], check=True, fail=False
        )
        return result is not None

    def commit_in_rev_list(self, commit: str, list_head: str) -> bool:
        """Check if commit is in rev-list (i.e., is an ancestor)"""
        if not commit or not self.commit_exists(commit):
            return False
        result = self.run(
            ['merge-base', '--is-ancestor', commit, list_head], check=True, fail=False
        )
        return result is not None

    def existing_objects(self, objects: Iterable[str]) -> List[str]:
        """Subset of commit or tag ids that are present locally"""
        objects = sorted(set(objects))
        if not objects:
            return []
        output = self.run(
            ['cat-file', '--batch-check'],
            capture=True,
            input=''.join(f'{obj}\n' for obj in objects),
        )
        found = []
        for line in output.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[1] in ('commit', 'tag'):
                found.append(parts[0])
        return found

    def ls_remote(self, remote: str, *patterns: str) -> Dict[str, str]:
        """Map of ref name to commit id on the remote"""
        output = self.run(['ls-remote', remote] + list(patterns), capture=True)
        refs = {}
        for line in output.splitlines():
            if '\t' not in line:
                continue
            sha, ref = line.split('\t', 1)
            refs[ref] = sha
        return refs

    def tracking_commits(self, remote: str) -> List[str]:
        """Commits the remote-tracking refs of remote point at"""
        output = self.run(
            ['for-each-ref', '--format=%(objectname)', f'refs/remotes/{remote}/'],
            capture=True,
        )
        return output.split()

    def commits_not_in(self, head: str, excluded: Iterable[str]) -> List[str]:
        """Commits reachable from head but not from any of the excluded ids"""
        lines = [head] + [f'^{sha}' for sha in self.existing_objects(excluded)]
        output = self.run(
            ['rev-list', '--stdin'], capture=True, input='\n'.join(lines) + '\n'
        )
        return output.split()

    def gitlinks(self, commit: str) -> List[Tuple[str, str]]:
        """(path, commit) for every submodule recorded in the commit's tree"""
        output = self.run(['ls-tree', '-r', '-z', commit], capture=True)
        links = []
        for entry in output.split('\0'):
            if not entry:
                continue
            info, path = entry.split('\t', 1)
            mode, _, sha = info.split()
            if mode == GITLINK_MODE:
                links.append((path, sha))
        return links

    def gitmodules_urls(self, commit: str) -> Dict[str, str]:
        """Submodule path to URL, as recorded in the commit's .gitmodules"""
        output = self.run(
            [
                'config',
                '--blob',
                f'{commit}:.gitmodules',
                '--get-regexp',
                r'^submodule\..*\.(path|url)$',
            ],
            capture=True,
            fail=False,
        )
        if not output:
            return {}

        paths, urls = {}, {}
        for line in output.splitlines():
            key, _, value = line.partition(' ')
            name, _, attr = key[len('submodule.'):].rpartition('.')
            if attr == 'path':
                paths[name] = value
            else:
                urls[name] = value
        return {paths[name]: urls[name] for name in paths if name in urls}

    def worktree(self) -> Optional[str]:
        """Top level of the working tree, None for a bare repository"""
        return self.run(['rev-parse', '--show-toplevel'], check=True, fail=False) or None

    def abspath(self) -> str:
        return os.path.abspath(self.path)

    def log(self, msg: str):
        """Print verbose/debug message"""
        if self.verbose or self.debug:
            print(f"* {msg}")

    def say(self, msg: str):
        """Print message unless quiet"""
        if not self.quiet:
            print(msg)


# ===== Remote URL Resolver =====


def _split_url_base(url: str) -> Tuple[str, str]:
    """Split url into its 'scheme://host' or 'user@host:' prefix and path"""
    idx = url.find('://')
    if idx != -1:
        start = url.find('/', idx + 3)
        if start == -1:
            return url, ''
        return url[:start], url[start:]

    colon = url.find(':')
    slash = url.find('/')
    if colon > 0 and (slash == -1 or colon < slash):
        return url[: colon + 1], url[colon + 1 :]
    return '', url


def is_plain_path(url: str) -> bool:
    """True if url is a filesystem path rather than a URL"""
    prefix, _ = _split_url_base(url)
    return not prefix


def join_submodule_url(base_url: str, sub_url: str) -> str:
    """Resolve a submodule URL recorded in .gitmodules against base_url.

    Relative URLs ('./x', '../x') are taken relative to base_url as if it
    were a directory, like git does for submodules. '.' names the enclosing
    repository itself. Any other URL is already absolute.
    """
    if sub_url in ('.', './'):
        return base_url
    if not (sub_url.startswith('./') or sub_url.startswith('../')):
        return sub_url

    prefix, path = _split_url_base(base_url)
    if path != '/':
        path = path.rstrip('/')
    while True:
        if sub_url.startswith('./'):
            sub_url = sub_url[2:]
        elif sub_url.startswith('../'):
            idx = path.rfind('/')
            if idx > 0:
                path = path[:idx]
            elif idx == 0:
                path = '/'
            else:
                path = ''
            sub_url = sub_url[3:]
        elif sub_url.startswith('/'):
            sub_url = sub_url[1:]
        else:
            break

    sub_url = sub_url.rstrip('/')
    if sub_url in ('', '.'):
        return f'{prefix}{path}'
    # 'https://host' has no path; 'user@host:' needs no separator
    if not path and prefix and not prefix.endswith(':'):
        return f'{prefix}/{sub_url}'
    return f'{prefix}{posixpath.join(path, sub_url)}'


def resolve_remote_url(git: GitRunner, remote_name: str, sub_url=None) -> str:
    """URL of remote_name in git's repository, or of a submodule under it.

    Only the enclosing repository's configuration is read: where its
    submodules live follows from its own remote, never from theirs.
    """
    url = git.config_get(f'remote.{remote_name}.url')
    if not url:
        raise UnresolvableRemoteError(f"No URL configured for remote '{remote_name}'.")

    # Relative to the top of the working tree, like git itself resolves it
    if is_plain_path(url) and not os.path.isabs(url):
        top = git.worktree() or git.abspath()
        url = os.path.normpath(os.path.join(top, url))

    if sub_url is None:
        return url
    return join_submodule_url(url, sub_url)


# ===== Fast-Forward Policy Enforcer =====


def check_fast_forward(
    remote_commit: Optional[str],
    candidate_commit: str,
    force: bool,
    is_ancestor: Callable[[str, str], bool],
) -> bool:
    """Whether candidate_commit may replace remote_commit on the remote"""
    if remote_commit is None or remote_commit == candidate_commit:
        return True
    if is_ancestor(remote_commit, candidate_commit):
        return True
    return force


# ===== Submodule Reachability Guarantor =====


def is_open_submodule(worktree: str, path: str) -> bool:
    """True if the submodule at path is checked out in the working tree"""
    return os.path.exists(os.path.join(worktree, path, '.git'))


@dataclass
class SubmodulePin:
    """Commits of one open submodule to pin on its resolved remote"""

    path: str
    url: str
    local_path: str
    commits: List[str] = field(default_factory=list)


class SubmodulePinner:
    """Keeps submodule commits referenced by published history reachable"""

    def __init__(self, git: GitRunner, remote_name: str):
        self.git = git
        self.remote_name = remote_name

    def find_pins(self, commits: Iterable[str]) -> List[SubmodulePin]:
        """Open submodule commits recorded in commits, grouped by remote"""
        worktree = self.git.worktree()
        if not worktree:
            self.git.log("No working tree, so there are no open submodules.")
            return []

        base_url = resolve_remote_url(self.git, self.remote_name)
        found: Dict[Tuple[str, str], set] = {}
        skipped = set()
        for commit in commits:
            urls = None
            for path, sha in self.git.gitlinks(commit):
                if not is_open_submodule(worktree, path):
                    if path not in skipped:
                        self.git.log(f"Skip closed submodule '{path}'.")
                        skipped.add(path)
                    continue
                if urls is None:
                    urls = self.git.gitmodules_urls(commit)
                if path not in urls:
                    raise UnresolvableRemoteError(
                        f"No URL in '.gitmodules' for submodule '{path}' "
                        f"in commit {commit}."
                    )
                url = join_submodule_url(base_url, urls[path])
                found.setdefault((path, url), set()).add(sha)

        return [
            SubmodulePin(path, url, os.path.join(worktree, path), sorted(shas))
            for (path, url), shas in sorted(found.items())
        ]

    def guarantee(self, commits: Iterable[str]) -> List[SubmodulePin]:
        """Create 'refs/commits/<sha>' on each submodule remote.

        Existing pins are read first. A pin already at its commit is left
        alone and a pin at any other commit is an error, so pins never
        move. Missing pins are pushed with a lease requiring that the ref
        still does not exist.
        """
        pins = self.find_pins(commits)
        for pin in pins:
            try:
                self.transfer(pin)
            except GitMetaError as e:
                raise SubmoduleTransferError(
                    f"Can't pin {', '.join(pin.commits)} of submodule "
                    f"'{pin.path}' on '{pin.url}'.\n{e.message}"
                )
        return pins

    def transfer(self, pin: SubmodulePin):
        sub_git = self.git.at(pin.local_path)
        existing = sub_git.ls_remote(pin.url, f'{COMMIT_REF_PREFIX}*')
        missing = []
        for commit in pin.commits:
            ref = COMMIT_REF_PREFIX + commit
            if ref not in existing:
                missing.append(commit)
            elif existing[ref] != commit:
                raise GitMetaError(f"Pin '{ref}' points at {existing[ref]}.")
        if not missing:
            self.git.log(f"Commits of '{pin.path}' are already pinned on '{pin.url}'.")
            return

        self.git.log(f"Pin {', '.join(missing)} of '{pin.path}' on '{pin.url}'.")
        leases = [f'--force-with-lease={COMMIT_REF_PREFIX}{c}:' for c in missing]
        refspecs = [f'{c}:{COMMIT_REF_PREFIX}{c}' for c in missing]
        sub_git.run(['push', '--quiet'] + leases + [pin.url] + refspecs)


# ===== Push Coordinator =====


def qualify_ref(name: str) -> str:
    """Full ref name for a branch name"""
    return name if name.startswith('refs/') else f'refs/heads/{name}'


@dataclass
class PushResult:
    """Outcome of a successful push"""

    remote: str
    url: str
    target: str
    old_commit: Optional[str]
    new_commit: str
    force: bool = False
    forced: bool = False
    up_to_date: bool = False
    published: List[str] = field(default_factory=list)
    pins: List[SubmodulePin] = field(default_factory=list)


class MetaPusher:
    """Publishes a meta-repository branch after pinning its submodules"""

    def __init__(self, git: GitRunner):
        self.git = git

    def push(self, remote_name, source, target=None, force=False) -> PushResult:
        new_commit = self.git.rev_parse(source)
        if not new_commit:
            raise UnknownRefError(f"Unknown source '{source}'.")

        if not target:
            target = self.git.symbolic_full_name(source)
            if not target or not target.startswith('refs/heads/'):
                raise UnknownRefError(
                    f"Can't determine the target branch for '{source}'."
                )
        target_ref = qualify_ref(target)

        url = resolve_remote_url(self.git, remote_name)
        self.git.log(f"Read refs of '{remote_name}' ({url}).")
        try:
            remote_refs = self.git.ls_remote(remote_name)
        except GitMetaError as e:
            raise GitMetaError(f"Can't read refs of remote '{remote_name}'.\n{e.message}")
        old_commit = remote_refs.get(target_ref)

        result = PushResult(
            remote=remote_name,
            url=url,
            target=target_ref,
            old_commit=old_commit,
            new_commit=new_commit,
            force=force,
        )

        if not check_fast_forward(
            old_commit, new_commit, force, self.git.commit_in_rev_list
        ):
            raise NonFastForwardError(
                f"Updates were rejected: '{target_ref}' on '{remote_name}' is at "
                f"{old_commit}, which is not an ancestor of {new_commit}. "
                f"Use '--force' to override."
            )

        result.forced = bool(
            force
            and old_commit
            and old_commit != new_commit
            and not self.git.commit_in_rev_list(old_commit, new_commit)
        )

        if old_commit == new_commit:
            self.git.log(f"'{target_ref}' on '{remote_name}' is up to date.")
            result.up_to_date = True
            return result

        # Remote tips missing here are still covered by their last fetched state
        known = list(remote_refs.values()) + self.git.tracking_commits(remote_name)
        result.published = self.git.commits_not_in(new_commit, known)
        self.git.log(f"Publishing {len(result.published)} new commit(s).")

        result.pins = SubmodulePinner(self.git, remote_name).guarantee(
            result.published
        )

        self.git.log(f"Update '{target_ref}' on '{remote_name}' to {new_commit}.")
        lease = f'--force-with-lease={target_ref}:{old_commit or ""}'
        try:
            self.git.run(
                [
                    'push',
                    '--quiet',
                    lease,
                    remote_name,
                    f'{new_commit}:{target_ref}',
                ]
            )
        except GitMetaError as e:
            raise RefUpdateError(
                f"Remote '{remote_name}' rejected the update of '{target_ref}' "
                f"to {new_commit}.\n{e.message}"
            )

        if target_ref.startswith('refs/heads/'):
            branch = target_ref[len('refs/heads/'):]
            tracking = f'refs/remotes/{remote_name}/{branch}'
            self.git.log(f"Update tracking ref '{tracking}'.")
            self.git.run(['update-ref', tracking, new_commit])

        return result


def push(git, remote_name, source, target=None, force=False) -> PushResult:
    """Publish source to target on remote_name, pinning submodule commits"""
    return MetaPusher(git).push(remote_name, source, target, force)


# ===== Command =====


class GitMetaPush:
    """The 'git meta-push' command"""

    def __init__(self):
        self.flags = Flags()
        self.git = GitRunner()
        self.remote = None
        self.source = None
        self.target = None
        self.git_version = None

    def main(self, args):
        """Main entry point"""
        for env_var, flag_attr in [
            ('GIT_META_QUIET', 'quiet'),
            ('GIT_META_VERBOSE', 'verbose'),
            ('GIT_META_DEBUG', 'debug'),
        ]:
            if os.getenv(env_var):
                setattr(self.flags, flag_attr, True)

        self.parse_args(args)
        self.check_environment()
        self.check_repository()
        self.cmd_push()

    def parse_args(self, args):
        """Parse command line arguments"""
        parser = self._create_parser()
        try:
            parsed = parser.parse_args(args)
        except argparse.ArgumentError as e:
            self.usage_error(str(e.message) if hasattr(e, 'message') else str(e))

        if parsed.version:
            print(VERSION)
            sys.exit(0)

        if not parsed.remote or not parsed.source:
            self.usage_error("usage: git meta-push [options] <remote> <source> [<target>]")

        for flag in ['force', 'quiet', 'verbose', 'debug']:
            if getattr(parsed, flag):
                setattr(self.flags, flag, True)

        self.git.verbose = self.flags.verbose
        self.git.debug = self.flags.debug
        self.git.quiet = self.flags.quiet

        self.remote = parsed.remote
        self.source = parsed.source
        self.target = parsed.target

    def _create_parser(self):
        """Create argument parser"""

        class CustomArgumentParser(argparse.ArgumentParser):
            def error(self, message):
                raise argparse.ArgumentError(None, message)

        parser = CustomArgumentParser(prog='git meta-push')
        parser.add_argument('--version', action='store_true')
        parser.add_argument('-f', '--force', action='store_true')
        parser.add_argument('-q', '--quiet', action='store_true')
        parser.add_argument('-v', '--verbose', action='store_true')
        parser.add_argument('-d', '--debug', action='store_true')
        parser.add_argument('remote', nargs='?')
        parser.add_argument('source', nargs='?')
        parser.add_argument('target', nargs='?')
        return parser

    def cmd_push(self):
        """Push a meta-repository branch"""
        result = MetaPusher(self.git).push(
            self.remote, self.source, self.target, self.flags.force
        )
        target = result.target
        if target.startswith('refs/heads/'):
            target = target[len('refs/heads/'):]

        if result.up_to_date:
            self.git.say(f"Branch '{target}' on '{self.remote}' is up to date.")
            return

        for pin in result.pins:
            self.git.say(
                f"Pinned {len(pin.commits)} commit(s) of '{pin.path}' on '{pin.url}'."
            )
        prefix = 'Force-pushed' if result.forced else 'Pushed'
        self.git.say(f"{prefix} '{self.source}' to '{self.remote}' ({target}).")

    # ===== Checks and Validations =====

    def check_environment(self):
        """Check that environment is suitable"""
        if not shutil.which('git'):
            self.error("Can't find your 'git' command in '$PATH'.")

        result = subprocess.run(['git', '--version'], capture_output=True, text=True)
        version_match = re.search(r'(\d+\.\d+\.\d+)', result.stdout)
        if version_match:
            self.git_version = version_match.group(1)
        else:
            self.error("Can't determine git version")

        if not self.check_version(self.git_version, REQUIRED_GIT_VERSION):
            self.error(
                f"Requires git version {REQUIRED_GIT_VERSION} or higher; you have '{self.git_version}'."
            )

    def check_repository(self):
        """Check that we are inside a repository"""
        if self.git.run(['rev-parse', '--git-dir'], check=True, fail=False) is None:
            self.error("Not inside a git repository.")

    def check_version(self, got: str, want: str) -> bool:
        """Check version is sufficient"""
        got_parts = got.split('.')
        want_parts = want.split('.')

        while len(got_parts) < 3:
            got_parts.append('0')
        while len(want_parts) < 3:
            want_parts.append('0')

        got_nums = [int(p) for p in got_parts[:3]]
        want_nums = [int(p) for p in want_parts[:3]]
        return got_nums >= want_nums

    def error(self, msg: str):
        """Raise an error that ends the command"""
        raise GitMetaError(msg)

    def usage_error(self, msg: str):
        """Print usage error and exit"""
        print(f"git-meta: {msg}", file=sys.stderr)
        sys.exit(1)


def main():
    """Main entry point"""
    try:
        app = GitMetaPush()
        app.main(sys.argv[1:])
    except GitMetaError as e:
        print(f"git-meta: {e.message}", file=sys.stderr)
        sys.exit(e.code)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == '__main__':
    main()
