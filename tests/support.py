"""Test data builders and a fake classifier gateway."""

import asyncio
from typing import Any, Dict, List, Set

from api.app.db import save_issue_labels, upsert_repo_issues
from api.app.errors import TransientClassificationFailure
from api.app.models import WorkItem

RUN_KEY = "acme/chat-app"


def seed_issues(count: int, run_key: str = RUN_KEY, repo_id: int = 1, first_id: int = 1000) -> List[int]:
    issues = [
        {
            "id": first_id + index,
            "number": index + 1,
            "title": f"Issue {index + 1}",
            "body": f"Body of issue {index + 1}",
            "is_pull_request": index % 4 == 3,
        }
        for index in range(count)
    ]
    asyncio.run(upsert_repo_issues(run_key, repo_id, issues))
    return [issue["id"] for issue in issues]


def make_item(item_id: int, number: int | None = None, run_key: str = RUN_KEY) -> WorkItem:
    number = number if number is not None else item_id
    return WorkItem(id=item_id, number=number, title=f"Issue {number}", run_key=run_key)


class FakeGateway:
    """Stands in for ClassifierGateway; persists through the real label sink."""

    def __init__(self, failing_numbers: Set[int] | None = None, delay: float = 0.0) -> None:
        self.failing_numbers = set(failing_numbers or ())
        self.delay = delay
        self.classify_calls: List[int] = []
        self.persisted: List[int] = []

    async def classify(self, item: WorkItem) -> Dict[str, Any]:
        self.classify_calls.append(item.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if item.number in self.failing_numbers:
            raise TransientClassificationFailure(f"classifier rejected #{item.number}")
        return {"chat": True, "need_manual_check": False}

    async def persist(self, item: WorkItem, labels: Dict[str, Any]) -> None:
        await save_issue_labels(item.id, item.is_pull_request, labels)
        self.persisted.append(item.id)
