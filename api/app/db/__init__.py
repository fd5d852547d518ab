from .pool import init_db_pool, close_db_pool, get_connection, transaction  # noqa: F401
from .schema import init_db  # noqa: F401
from .queue import push_items, pop_item, queue_length, clear_queue  # noqa: F401
from .runs import (  # noqa: F401
    get_run_status,
    get_run_state,
    set_run_status,
    reset_run_children,
    transition_run_state,
    complete_if_drained,
    record_item_outcome,
    set_in_flight,
    clear_in_flight,
    record_failure,
    requeue_failures,
    purge_expired_runs,
    recover_interrupted_runs,
)
from .issues import list_candidates, upsert_repo_issues  # noqa: F401
from .labels import (  # noqa: F401
    existing_label_ids,
    save_issue_labels,
    get_issue_labels,
    count_issue_labels,
    count_labeled_since,
)
