# File: link_audit/aggregator.py
"""link_audit.aggregator: сведение результатов проверки в одну запись на URL."""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Set

from link_audit.crawler.models import INITIAL_SOURCE, LinkRecord, LinkStatus

__all__ = ["MAX_CONTEXTS_PER_PAGE", "ResultAggregator"]

#: статусы, полученные сетевой проверкой; их не перезаписывают external/skipped
_DEFINITIVE = frozenset((LinkStatus.OK, LinkStatus.BROKEN, LinkStatus.ERROR))

#: сколько разных фрагментов разметки хранить для одной пары (URL, страница)
MAX_CONTEXTS_PER_PAGE = 5

_Contexts = Dict[str, List[str]]


class ResultAggregator:
    """Хранит одну LinkRecord на уникальный URL и множество страниц, где он найден.

    Провенанс (``found_on``) только пополняется: ссылка, обнаруженная на
    странице, остаётся в множестве до конца сканирования. Рядом хранятся
    фрагменты разметки (``html_contexts``): страница -> элементы, которые на
    ней ссылаются на URL. Провенанс может появиться раньше результата
    проверки (URL ждёт во фронтире); такие URL не попадают в :meth:`results`,
    но сохраняются в снимке состояния.
    """

    def __init__(self) -> None:
        self._records: Dict[str, LinkRecord] = {}
        self._found_on: Dict[str, Set[str]] = {}
        self._contexts: Dict[str, _Contexts] = {}

    # ------------------------------------------------------------------ запись

    def add_reference(
        self, url: str, found_on: Optional[str], context: Optional[str] = None
    ) -> None:
        """Запоминает, что *url* встречается на странице *found_on* (в элементе *context*)."""
        pages = self._found_on.setdefault(url, set())
        if not found_on:
            return
        pages.add(found_on)
        if context:
            snippets = self._contexts.setdefault(url, {}).setdefault(found_on, [])
            if context not in snippets and len(snippets) < MAX_CONTEXTS_PER_PAGE:
                snippets.append(context)

    def record(
        self,
        partial: LinkRecord,
        found_on: Optional[str] = None,
        context: Optional[str] = None,
    ) -> LinkRecord:
        """Сливает результат проверки с уже известной записью того же URL."""
        self.add_reference(partial.url, found_on, context)
        existing = self._records.get(partial.url)
        if existing is None or not (
            existing.status in _DEFINITIVE and partial.status not in _DEFINITIVE
        ):
            self._records[partial.url] = partial.model_copy(
                update={"found_on": set(), "html_contexts": {}}
            )
        return self.get(partial.url)  # type: ignore[return-value]

    def discard(self, url: str) -> None:
        """Удаляет URL целиком (принудительное CSS-исключение)."""
        self._records.pop(url, None)
        self._found_on.pop(url, None)
        self._contexts.pop(url, None)

    # ------------------------------------------------------------------ чтение

    def get(self, url: str) -> Optional[LinkRecord]:
        record = self._records.get(url)
        if record is None:
            return None
        return record.model_copy(
            update={
                "found_on": set(self._found_on.get(url, ())),
                "html_contexts": self._contexts_of(url),
            }
        )

    def _contexts_of(self, url: str) -> _Contexts:
        return {page: list(snippets) for page, snippets in self._contexts.get(url, {}).items()}

    def has_result(self, url: str) -> bool:
        return url in self._records

    def results(self) -> List[LinkRecord]:
        """Все проверенные URL в порядке первой проверки."""
        return [self.get(url) for url in self._records]  # type: ignore[misc]

    @property
    def broken_count(self) -> int:
        return sum(1 for r in self._records.values() if r.is_broken)

    @property
    def total_count(self) -> int:
        return len(self._records)

    # ---------------------------------------------------------- снимок/восстановление

    def snapshot(self) -> tuple[List[LinkRecord], Dict[str, List[str]], Dict[str, _Contexts]]:
        """Записи, а также провенанс и контексты URL, которые ещё не проверены."""
        waiting = [url for url in self._found_on if url not in self._records]
        pending = {url: sorted(self._found_on[url]) for url in waiting}
        contexts = {url: self._contexts_of(url) for url in waiting if url in self._contexts}
        return self.results(), pending, contexts

    @classmethod
    def restore(
        cls,
        records: Iterable[LinkRecord],
        pending: Optional[Mapping[str, Iterable[str]]] = None,
        pending_contexts: Optional[Mapping[str, Mapping[str, Iterable[str]]]] = None,
    ) -> ResultAggregator:
        agg = cls()
        for rec in records:
            agg._records[rec.url] = rec.model_copy(update={"found_on": set(), "html_contexts": {}})
            agg._found_on.setdefault(rec.url, set()).update(rec.found_on)
            agg._merge_contexts(rec.url, rec.html_contexts)
        for url, pages in (pending or {}).items():
            agg._found_on.setdefault(url, set()).update(pages)
        for url, contexts in (pending_contexts or {}).items():
            agg._merge_contexts(url, contexts)
        return agg

    def _merge_contexts(self, url: str, contexts: Mapping[str, Iterable[str]]) -> None:
        for page, snippets in contexts.items():
            for snippet in snippets:
                self.add_reference(url, page, snippet)

    def seed(self, url: str) -> None:
        """Помечает стартовый URL служебным источником ``initial``."""
        self.add_reference(url, INITIAL_SOURCE)
