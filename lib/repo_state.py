"""
Repository state snapshots for checking the outcome of a push

Commit ids are content hashes assigned when commits are created, so a
check written ahead of time can only name commits by a label of its own
choosing. A RepoState records refs by label; read_repo_state() maps the
real ids of an actual repository back to labels, and remap_commit_refs()
moves expected 'commits/<label>' ref names onto the real ids they are
named after, so that both sides compare with '=='.
"""

import os
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from git_meta_push import GitRunner, is_open_submodule

COMMIT_REF_RE = re.compile(r'^(commits/)(.+)$')


@dataclass
class RepoState:
    """Refs of one repository, and of its open submodules"""

    head: Optional[str] = None
    branches: Dict[str, str] = field(default_factory=dict)
    refs: Dict[str, str] = field(default_factory=dict)
    remotes: Dict[str, Dict[str, str]] = field(default_factory=dict)
    open_submodules: Dict[str, 'RepoState'] = field(default_factory=dict)

    def copy(self, **changes) -> 'RepoState':
        return replace(self, **changes)


def remap_commit_refs(
    expected: Dict[str, RepoState], reverse_commit_map: Dict[str, str]
) -> Dict[str, RepoState]:
    """Rename 'commits/<logical id>' refs to 'commits/<physical id>'.

    The commit a ref points at keeps its logical id. Other refs, and
    logical ids missing from reverse_commit_map, are left unchanged.
    """
    result = {}
    for name, state in expected.items():
        refs = {}
        for ref, logical_id in state.refs.items():
            match = COMMIT_REF_RE.match(ref)
            if match:
                commit_id = match.group(2)
                ref = match.group(1) + reverse_commit_map.get(commit_id, commit_id)
            refs[ref] = logical_id
        result[name] = state.copy(
            refs=refs,
            open_submodules=remap_commit_refs(
                state.open_submodules, reverse_commit_map
            ),
        )
    return result


def read_repo_state(path, commit_map=None) -> RepoState:
    """Actual state of the repository at path, with commits as labels"""
    commit_map = commit_map or {}
    git = GitRunner(path)

    def label(sha):
        return commit_map.get(sha, sha)

    state = RepoState()
    head = git.rev_parse('HEAD')
    if head:
        state.head = label(head)

    output = git.run(['for-each-ref', '--format=%(objectname) %(refname)'], capture=True)
    for line in output.splitlines():
        sha, _, ref = line.partition(' ')
        if ref.startswith('refs/heads/'):
            state.branches[ref[len('refs/heads/'):]] = label(sha)
        elif ref.startswith('refs/remotes/'):
            remote, _, branch = ref[len('refs/remotes/'):].partition('/')
            if branch == 'HEAD':
                continue
            state.remotes.setdefault(remote, {})[branch] = label(sha)
        else:
            state.refs[ref[len('refs/'):]] = label(sha)

    worktree = git.worktree()
    if worktree and head:
        for sub_path, _ in git.gitlinks(head):
            if is_open_submodule(worktree, sub_path):
                state.open_submodules[sub_path] = read_repo_state(
                    os.path.join(worktree, sub_path), commit_map
                )
    return state
