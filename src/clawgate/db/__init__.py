"""SQLite database layer.

All functions are async using aiosqlite.
Module-level connection, initialized by init_database().

This package is split into domain-specific submodules:
  _connection  — schema, init
  chats        — chat metadata for discovery
  messages     — message storage and retrieval
  groups       — registered groups
  sessions     — agent sessions and router state
  tasks        — scheduled task CRUD and run logging
  emails       — processed-email dedup records
"""

# Re-export every public symbol so that `from clawgate.db import X` works.

from clawgate.db._connection import (
    _get_db,
    _init_test_database,
    close_database,
    init_database,
)
from clawgate.db.chats import (
    get_all_chats,
    get_last_group_sync,
    set_last_group_sync,
    store_chat_metadata,
    update_chat_name,
)
from clawgate.db.emails import (
    get_processed_email,
    get_unresponded_emails,
    is_email_processed,
    mark_email_processed,
    mark_email_responded,
    set_pending_reply,
)
from clawgate.db.groups import (
    get_all_registered_groups,
    set_registered_group,
)
from clawgate.db.messages import (
    get_messages_since,
    get_new_messages,
    store_message,
)
from clawgate.db.sessions import (
    get_all_sessions,
    get_router_state,
    set_router_state,
    set_session,
)
from clawgate.db.tasks import (
    create_task,
    delete_task,
    get_all_tasks,
    get_due_tasks,
    get_task_by_id,
    log_task_run,
    update_task,
    update_task_after_run,
)

__all__ = [
    # connection
    "_get_db",
    "_init_test_database",
    "close_database",
    "init_database",
    # chats
    "get_all_chats",
    "get_last_group_sync",
    "set_last_group_sync",
    "store_chat_metadata",
    "update_chat_name",
    # emails
    "get_processed_email",
    "get_unresponded_emails",
    "is_email_processed",
    "mark_email_processed",
    "mark_email_responded",
    "set_pending_reply",
    # groups
    "get_all_registered_groups",
    "set_registered_group",
    # messages
    "get_messages_since",
    "get_new_messages",
    "store_message",
    # sessions
    "get_all_sessions",
    "get_router_state",
    "set_router_state",
    "set_session",
    # tasks
    "create_task",
    "delete_task",
    "get_all_tasks",
    "get_due_tasks",
    "get_task_by_id",
    "log_task_run",
    "update_task",
    "update_task_after_run",
]
