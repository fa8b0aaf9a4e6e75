# File: link_audit/engine.py
"""link_audit.engine: фасад движка для заданий, их запуска и повторной проверки ссылок."""

from __future__ import annotations

from typing import List, Optional, Union

from aiohttp import ClientSession

from link_audit.config import EngineSettings, ScanConfig, load_config, parse_scan_config
from link_audit.crawler.checker import LinkChecker, new_session
from link_audit.crawler.models import LinkRecord, LinkStatus
from link_audit.errors import ConfigurationError, JobNotFoundError
from link_audit.jobs.controller import JobController
from link_audit.jobs.history import FileHistoryStore, HistoryStore
from link_audit.jobs.models import JobState, JobStatus
from link_audit.jobs.saved_configs import ConfigStore, FileConfigStore
from link_audit.jobs.store import FileJobStore, JobStore
from link_audit.logger import logger
from link_audit.utils import hostname, is_http_url, is_in_scope, normalize_url

__all__ = ["Engine", "recheck_url"]


async def recheck_url(
    url: str,
    config: ScanConfig,
    original_scan_url: str,
    session: Optional[ClientSession] = None,
) -> LinkRecord:
    """Проверяет один URL вне сканирования.

    Результат зависит только от аргументов (и ответа сервера): решение об
    авторизации и признак external вычисляются относительно хоста исходного
    сканирования так же, как во время обхода. ``found_on`` у результата
    пустой, его сохраняет вызывающий код.
    """
    try:
        if not is_http_url(url.strip()):
            return LinkRecord(url=url, status=LinkStatus.SKIPPED)
        target = normalize_url(url)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid URL: {url!r}") from exc

    if session is None:
        async with new_session(config) as own:
            outcome = await LinkChecker(own, config, original_scan_url).check(target)
    else:
        outcome = await LinkChecker(session, config, original_scan_url).check(target)

    status = outcome.status
    origin_host = hostname(original_scan_url) or ""
    if status is LinkStatus.OK and not is_in_scope(target, origin_host, config):
        status = LinkStatus.EXTERNAL
    logger.info(
        "Re-checked %s: %s (%s)", target, status.value, outcome.status_code or outcome.error_message
    )
    return outcome.to_record(status)


class Engine:
    """Фасад для CLI и тестов: создание заданий, запуск, управление, повторная проверка."""

    @staticmethod
    def load_config(path: str) -> ScanConfig:
        """Загружает конфиг сканирования из YAML/JSON."""
        return load_config(path)

    def __init__(
        self,
        store: JobStore,
        history: Optional[HistoryStore] = None,
        settings: Optional[EngineSettings] = None,
        configs: Optional[ConfigStore] = None,
    ) -> None:
        self.store = store
        self.history = history
        self.settings = settings or EngineSettings()
        self.configs = configs
        self.controller = JobController(store, history, self.settings)

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> Engine:
        """Файловые хранилища в ``settings.data_dir``."""
        return cls(
            FileJobStore(settings.jobs_dir),
            FileHistoryStore(settings.history_dir),
            settings,
            FileConfigStore(settings.configs_dir),
        )

    # ------------------------------------------------------------------ задания

    async def create_job(
        self, url: str, config: Union[ScanConfig, dict, None] = None
    ) -> JobState:
        """Ставит сканирование в очередь; при некорректном URL или конфиге ConfigurationError."""
        try:
            if not is_http_url(normalize_url(url)):
                raise ValueError(url)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid start URL: {url!r}") from exc
        return await self.store.create_job(url, parse_scan_config(config))

    async def create_job_from_config(self, config_id: str) -> JobState:
        """Ставит в очередь сохранённую конфигурацию (её URL и ScanConfig)."""
        if self.configs is None:
            raise JobNotFoundError("no configuration store configured")
        saved = await self.configs.get(config_id)
        if saved is None:
            raise JobNotFoundError(f"saved configuration {config_id} not found")
        return await self.create_job(saved.url, saved.config)

    async def get_job(self, job_id: str) -> JobState:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found")
        return job

    async def start_job(self, job: JobState) -> List[LinkRecord]:
        """Выполняет задание до завершения или приостановки."""
        return await self.controller.run(job)

    async def pause(self, job_id: str) -> JobState:
        return await self.controller.pause(job_id)

    async def resume(self, job_id: str) -> JobState:
        return await self.controller.resume(job_id)

    async def stop(self, job_id: str) -> JobState:
        return await self.controller.stop(job_id)

    async def stop_all(self) -> List[JobState]:
        """Останавливает все незавершённые задания."""
        stopped = []
        for job in await self.store.list_jobs():
            if job.status.is_terminal or job.status is JobStatus.STOPPING:
                continue
            stopped.append(await self.controller.stop(job.id))
        return stopped

    # ------------------------------------------------------------------ повторная проверка

    async def recheck_url(
        self, url: str, config: ScanConfig, original_scan_url: str
    ) -> LinkRecord:
        return await recheck_url(url, config, original_scan_url)

    async def recheck_history_entry(self, history_id: str, url: str) -> LinkRecord:
        """Перепроверяет ссылку сохранённого сканирования и записывает новый статус.

        Используются конфиг и стартовый URL исходного сканирования; ``found_on``
        сохраняется из истории.
        """
        if self.history is None:
            raise JobNotFoundError("no history store configured")
        saved = await self.history.get(history_id)
        if saved is None:
            raise JobNotFoundError(f"saved scan {history_id} not found")
        record = await recheck_url(url, saved.config, saved.scan_url)
        updated = await self.history.replace_record(history_id, record)
        for r in updated.results:
            if r.url == record.url:
                return r
        return record
