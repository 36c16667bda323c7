# crewboard: shared tasks with creator and assignee perspectives
#
# Components:
#   schema.py        - Data model (Task, Assignment, AssignmentTarget, TaskView, Notification)
#   errors.py        - Error taxonomy surfaced to callers
#   config.py        - YAML configuration and factories
#   db.py            - SQLite connection setup and transactions
#   directory.py     - User/team resolution (static or HTTP directory)
#   positioner.py    - Dense kanban column ordering
#   store.py         - SQLite task store, the single writer of task state
#   events.py        - Change notifier and client-side reconciliation
#   notifications.py - Notification sink and delivery channels
#   scheduler.py     - Deadline, stale-task and recurring jobs
