import asyncio
import logging
from typing import Any, Dict, Protocol

from ..db import save_issue_labels
from ..errors import TransientClassificationFailure
from ..models import WorkItem

logger = logging.getLogger("issuelens.batch")


class Classifier(Protocol):
    async def classify(self, title: str, body: str) -> Dict[str, Any]:
        ...


class ClassifierGateway:
    """Classifies one work item and stores its labels, each step time-bounded.

    Every failure surfaces as TransientClassificationFailure so the worker can
    decide whether to retry.
    """

    def __init__(
        self,
        classifier: Classifier,
        item_timeout: float = 30.0,
        provider: str | None = None,
        model: str | None = None,
    ) -> None:
        self._classifier = classifier
        self._timeout = item_timeout
        self._provider = provider
        self._model = model

    async def classify(self, item: WorkItem) -> Dict[str, Any]:
        try:
            labels = await asyncio.wait_for(
                self._classifier.classify(item.title, item.body),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientClassificationFailure(
                f"Classification of #{item.number} timed out after {self._timeout}s"
            ) from exc
        except Exception as exc:
            raise TransientClassificationFailure(f"Classification of #{item.number} failed: {exc}") from exc
        if not isinstance(labels, dict) or not labels:
            raise TransientClassificationFailure(f"Classification of #{item.number} returned no labels")
        return labels

    async def persist(self, item: WorkItem, labels: Dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(
                save_issue_labels(
                    item.id,
                    item.is_pull_request,
                    labels,
                    provider=self._provider,
                    model=self._model,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise TransientClassificationFailure(
                f"Saving labels of #{item.number} timed out after {self._timeout}s"
            ) from exc
        except Exception as exc:
            raise TransientClassificationFailure(f"Saving labels of #{item.number} failed: {exc}") from exc
