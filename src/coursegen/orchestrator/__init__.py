"""Course generation job orchestrator.

A "generate a course" request is decomposed into a dependency graph of
lesson sections, assessments, quizzes, an exam and media tasks. Every task
attempt goes through the task runner, every status change is a guarded
SQLite update, and the health monitor and recovery controller only ever
re-engage dispatch through the orchestrator instead of executing tasks
themselves. The database is the only source of truth: a process that dies
mid-job leaves enough state behind for another one to resume it.
"""
