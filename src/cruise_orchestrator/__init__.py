"""
cruise-orchestrator: supervise LLM coding-agent subprocesses.

Plans are split into dependency waves and every task runs in its own
git-worktree sandbox under a lifecycle watcher that enforces idle and total
timeouts and recovers from permission denials. Pull requests go through a
concurrent review/fix pipeline and an approval wait that survives restarts.

Importing the package has no side effects; submodules are loaded on demand.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
