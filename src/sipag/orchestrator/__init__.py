"""Task orchestration for sipag.

A single control process polls every registered project, admits ready tasks
under a per-project and a global worker ceiling, and runs each task in its
own child process. The worker clones the project, runs the external coding
agent on a fresh branch, pushes the result and opens a pull request, then
reports the outcome back to the task store.

Task stores sit behind one six-operation contract (``sources.base``): GitHub
issues with pipeline labels, a directory-per-state filesystem queue, and a
SQLite table of suspended actions. The scheduler and the worker never look
past that contract.
"""
