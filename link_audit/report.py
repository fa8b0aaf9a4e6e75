# link_audit/report.py

"""
Генерация JSON-отчёта для проекта LinkAudit.

Сериализация списка LinkRecord в строку или файл.
"""
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from link_audit.crawler.models import LinkRecord


def records_to_json(records: Iterable[LinkRecord]) -> List[Dict[str, Any]]:
    """LinkRecord -> JSON-совместимые словари (found_on отсортирован)."""
    return [r.model_dump(mode="json") for r in records]


def dumps(records: Iterable[LinkRecord], indent: Optional[int] = None) -> str:
    return json.dumps(records_to_json(records), ensure_ascii=False, indent=indent)


def render_json(records: Iterable[LinkRecord], output_path: Path | str) -> Path:
    """
    Сохраняет записи в формате JSON по указанному пути.

    :param records: результаты сканирования
    :param output_path: путь к JSON-файлу
    :return: Path сохранённого файла

    Пример:
    ```python
    from link_audit.report import render_json
    report_path = render_json(records, 'reports/links.json')
    ```
    """
    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)

    with output.open('w', encoding='utf-8') as f:
        json.dump(records_to_json(records), f, ensure_ascii=False, indent=2)

    return output


__all__ = ["dumps", "records_to_json", "render_json"]
