# === FILE: link_audit/scanner.py ===
"""
Модуль-обёртка для разового сканирования без хранилища заданий.
"""
from typing import List, Union

from link_audit.config import ScanConfig, parse_scan_config
from link_audit.crawler.crawler import CrawlOrchestrator
from link_audit.crawler.models import LinkRecord, LinkStatus


async def start_scan(url: str, cfg: Union[ScanConfig, dict, None] = None) -> List[LinkRecord]:
    """
    Запускает обход сайта в контексте и возвращает список LinkRecord.

    Parameters
    ----------
    url : str
        Стартовый URL.
    cfg : ScanConfig | dict | None
        Конфигурация сканирования; None означает значения по умолчанию.

    Returns
    -------
    List[LinkRecord]
        По одной записи на уникальный URL.
    """
    config: ScanConfig = parse_scan_config(cfg)
    async with CrawlOrchestrator(url, config) as crawler:
        await crawler.run()
    return crawler.results()


def broken_only(records: List[LinkRecord], *, include_errors: bool = True) -> List[LinkRecord]:
    """Оставляет только битые ссылки (и, по умолчанию, ошибки запросов)."""
    if include_errors:
        return [r for r in records if r.is_broken]
    return [r for r in records if r.status is LinkStatus.BROKEN]


__all__ = ["start_scan", "broken_only"]
