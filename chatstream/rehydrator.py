import logging
from typing import Any, Callable, Dict, List, Optional

from chatstream.reconciler import MessageReconciler
from chatstream.schemas import ChatMessage, MultiSearchEntry, SearchResults

logger = logging.getLogger("uvicorn.error")

ReconcilerFactory = Callable[[ChatMessage], MessageReconciler]


def _first_step_missing(message: ChatMessage) -> bool:
    """The singular search fields mirror step 0 and are restorable only when it succeeded."""
    if not (message.search_completed and message.search_request and message.search_results is None):
        return False
    if message.multi_search:
        first = message.multi_search[0]
        return first.completed and not first.error
    return not message.search_error


def needs_rehydration(message: ChatMessage, include_images: bool = True) -> bool:
    if message.sender != "assistant":
        return False
    if _first_step_missing(message):
        return True
    if any(e.completed and not e.error and e.results is None and e.query for e in message.multi_search):
        return True
    if (
        include_images
        and message.image_generation_completed
        and not message.image_generation_error
        and not message.generated_images
        and message.image_prompt
    ):
        return True
    return False


class Rehydrator:
    """Re-fetches side-effect results that were completed but are missing from storage.

    Only result fields are written back; completion flags, error flags and the
    number of search entries are never changed, so a second pass finds nothing
    to do.
    """

    def __init__(self, search_client: Any, image_client: Any = None, include_images: bool = True):
        self.search_client = search_client
        self.image_client = image_client
        self.include_images = include_images

    async def _search(self, query: str, cache: Dict[str, Optional[SearchResults]]) -> Optional[SearchResults]:
        if query in cache:
            return cache[query]
        try:
            results = await self.search_client.search_web(query)
        except Exception as exc:
            logger.warning("Rehydration search failed for %r: %s", query, exc)
            results = None
        cache[query] = results
        return results

    async def rehydrate_message(
        self, reconciler: MessageReconciler, cache: Dict[str, Optional[SearchResults]]
    ) -> Dict[str, Any]:
        message = reconciler.message
        fields: Dict[str, Any] = {}
        entries: List[MultiSearchEntry] = list(message.multi_search)
        changed = False
        for idx, entry in enumerate(entries):
            if not entry.completed or entry.error or entry.results is not None or not entry.query:
                continue
            results = await self._search(entry.query, cache)
            if results is not None:
                entries[idx] = entry.model_copy(update={"results": results})
                changed = True
        if changed:
            fields["multi_search"] = entries

        if _first_step_missing(message):
            if entries:
                first_results = entries[0].results
            else:
                first_results = await self._search(message.search_request, cache)
            if first_results is not None:
                fields["search_results"] = first_results

        if (
            self.include_images
            and self.image_client is not None
            and message.image_generation_completed
            and not message.image_generation_error
            and not message.generated_images
            and message.image_prompt
        ):
            try:
                result = await self.image_client.generate_image(message.image_prompt)
                images = (result or {}).get("images") or []
                if images:
                    fields["generated_images"] = images
            except Exception as exc:
                logger.warning("Rehydration image generation failed for %s: %s", message.id, exc)

        if fields:
            reconciler.restore(fields)
        return fields

    async def rehydrate(self, messages: List[ChatMessage], make_reconciler: ReconcilerFactory) -> int:
        """Restore missing results in place; returns the number of messages that changed."""
        cache: Dict[str, Optional[SearchResults]] = {}
        restored = 0
        for message in messages:
            if not needs_rehydration(message, self.include_images):
                continue
            reconciler = make_reconciler(message)
            fields = await self.rehydrate_message(reconciler, cache)
            await reconciler.drain()
            if fields:
                restored += 1
        return restored
