"""Task execution engine for plan-file driven agent runs.

A project is a folder of numbered plan files. The engine runs the agent once
per plan on a pseudo-terminal, reads the declared result from the completion
markers it prints, and records progress in two places:

- ``outcomes/`` holds one markdown report per task. The derived view
  (``derivation.py``) reads only plans and outcomes, so a human can always
  see and edit the truth.
- ``state.json`` is the authoritative record of attempts, timestamps,
  baselines and commits (``state_store.py``). It is rewritten atomically on
  every change and never repaired by guessing.

Failures are classified before the retry decision: declared and transient
failures retry up to the configured cap, while context overflow and
deny-listed reasons stop the batch. Git integration (stash on failure,
commit on success, worktree isolation, merge / PR / leave) shells out to
``git`` and ``gh``.
"""
