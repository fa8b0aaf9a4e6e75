# === FILE: link_audit/cli.py ===
#!/usr/bin/env python3
"""
Точка входа LinkAudit в командной строке.

Команды:
  scan URL            Разовое сканирование без хранилища заданий
  jobs ...            Очередь заданий: create, list, show, logs, pause, resume, stop, stop-all
  worker              Обработчик очереди (--once: одно задание и выход)
  history ...         Сохранённые сканирования: list, show, last, delete
  configs ...         Именованные конфигурации: save, list, show, delete, run
  recheck ID URL      Перепроверить ссылку сохранённого сканирования
  config PATH         Показать проверенную конфигурацию сканирования

Общие опции:
  --settings PATH     YAML/JSON с настройками движка (default: configs/linkaudit.yaml)
  --data-dir DIR      Каталог заданий и истории (override data_dir)
  --log-level LEVEL   Уровень логирования (DEBUG, INFO, ...)
  --log-file PATH     Файл для логов (дополнительно к stderr)
  --log-format FORMAT Формат логирования

Дополнительно:
  --version, -v       Показать версию LinkAudit

Пример:
  linkaudit scan https://example.com --depth 2 --broken-only --pretty
  linkaudit jobs create https://example.com --config configs/scan.yaml
  linkaudit --log-level INFO worker
"""
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click

from link_audit import __version__
from link_audit.config import ScanConfig, load_config, load_settings, parse_scan_config
from link_audit.engine import Engine
from link_audit.errors import LinkAuditError
from link_audit.logger import init_logging
from link_audit.report import dumps, render_json
from link_audit.scanner import broken_only, start_scan
from link_audit.worker import WorkerDispatcher

CONTEXT_SETTINGS = dict(help_option_names=["--help"])


def print_error(message: str):
    click.secho(message, fg='red', err=True)
    sys.exit(1)


def _scan_config(
    config_path: Optional[Path],
    depth: Optional[int],
    unlimited: bool,
    concurrency: Optional[int],
) -> ScanConfig:
    """Конфиг из файла (или по умолчанию) с переопределениями из опций."""
    try:
        cfg = load_config(config_path) if config_path else ScanConfig()
        overrides: Dict[str, Any] = {}
        if unlimited:
            overrides['depth'] = None
        elif depth is not None:
            overrides['depth'] = depth
        if concurrency is not None:
            overrides['concurrency'] = concurrency
        if overrides:
            cfg = parse_scan_config(cfg.model_dump() | overrides)
    except (LinkAuditError, OSError, ValueError, TypeError) as e:
        print_error(f'Ошибка загрузки конфигурации: {e}')
    return cfg


def _masked(cfg: ScanConfig) -> Dict[str, Any]:
    data = cfg.to_wire()
    if data.get('auth'):
        data['auth']['password'] = '***'
    return data


def _engine(ctx) -> Engine:
    return Engine.from_settings(ctx.obj['settings'])


def _run(coro):
    try:
        return asyncio.run(coro)
    except LinkAuditError as e:
        print_error(str(e))


def scan_options(f):
    """Общие опции конфигурации для scan и jobs create."""
    f = click.option(
        '--concurrency', type=click.IntRange(1, 50), default=None,
        help='Максимум одновременных запросов'
    )(f)
    f = click.option(
        '--unlimited-depth', 'unlimited', is_flag=True,
        help='Без ограничения глубины'
    )(f)
    f = click.option(
        '--depth', '-d', type=click.IntRange(min=0), default=None,
        help='Глубина обхода (0 — только стартовая страница)'
    )(f)
    f = click.option(
        '--config', '-c', 'config_path', default=None,
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        help='YAML/JSON с конфигурацией сканирования'
    )(f)
    return f


@click.group(context_settings=CONTEXT_SETTINGS)
@click.version_option(__version__, '--version', '-v', message='LinkAudit, version %(version)s')
@click.option(
    '--settings', 'settings_path',
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help='Файл настроек движка (по умолчанию configs/linkaudit.yaml, если есть)'
)
@click.option(
    '--data-dir', 'data_dir',
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help='Каталог для заданий и истории сканирований'
)
@click.option(
    '--log-level', 'log_level',
    default='WARNING', show_default=True,
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']),
    help='Уровень логирования'
)
@click.option(
    '--log-file', 'log_file',
    default=None,
    type=click.Path(writable=True, dir_okay=False, path_type=Path),
    help='Путь к файлу логов (дополнительно к stderr)'
)
@click.option(
    '--log-format', 'log_format',
    default='%(asctime)s %(levelname)s %(name)s %(message)s',
    show_default=True,
    help='Строка формата для логов'
)
@click.pass_context
def cli(ctx, settings_path, data_dir, log_level, log_file, log_format):
    """Группа команд LinkAudit CLI."""
    init_logging(
        level=log_level,
        log_file=str(log_file) if log_file else None,
        log_format=log_format
    )
    try:
        settings = load_settings(settings_path)
    except (LinkAuditError, OSError, ValueError, TypeError) as e:
        print_error(f'Ошибка загрузки настроек: {e}')
    if data_dir is not None:
        settings = settings.model_copy(update={'data_dir': data_dir})
    ctx.ensure_object(dict)
    ctx.obj['settings'] = settings


# --------------------------------------------------------------------------- #
# scan                                                                        #
# --------------------------------------------------------------------------- #

@cli.command('scan', context_settings=CONTEXT_SETTINGS)
@click.argument('url')
@scan_options
@click.option(
    '--json', '-j', 'json_output',
    default=None,
    type=click.Path(writable=True, dir_okay=False, path_type=Path),
    help='Сохранить JSON-отчёт в файл'
)
@click.option('--pretty', is_flag=True, help='Преформатировать JSON-вывод (отступ 2)')
@click.option('--broken-only', 'only_broken', is_flag=True, help='Только битые ссылки и ошибки')
@click.option(
    '--scan-timeout', 'scan_timeout',
    type=float,
    default=None,
    help='Таймаут всего сканирования (секунд)'
)
def scan(url, config_path, depth, unlimited, concurrency, json_output, pretty, only_broken, scan_timeout):
    """Просканировать URL и вывести результаты в JSON."""
    cfg = _scan_config(config_path, depth, unlimited, concurrency)
    try:
        if scan_timeout:
            records = asyncio.run(
                asyncio.wait_for(start_scan(url, cfg), timeout=scan_timeout)
            )
        else:
            records = asyncio.run(start_scan(url, cfg))
    except asyncio.TimeoutError:
        print_error(f'Сканирование не завершено за {scan_timeout} секунд')
    except LinkAuditError as e:
        print_error(f'Ошибка при сканировании: {e}')

    if only_broken:
        records = broken_only(records)

    if json_output:
        try:
            saved = render_json(records, json_output)
        except OSError as e:
            print_error(f'Ошибка при сохранении JSON: {e}')
        click.echo(f'JSON report: {saved}')
        return

    click.echo(dumps(records, indent=2 if pretty else None))


# --------------------------------------------------------------------------- #
# jobs                                                                        #
# --------------------------------------------------------------------------- #

@cli.group('jobs', context_settings=CONTEXT_SETTINGS)
def jobs():
    """Управление очередью заданий."""


@jobs.command('create', context_settings=CONTEXT_SETTINGS)
@click.argument('url')
@scan_options
@click.pass_context
def jobs_create(ctx, url, config_path, depth, unlimited, concurrency):
    """Поставить сканирование в очередь."""
    cfg = _scan_config(config_path, depth, unlimited, concurrency)
    job = _run(_engine(ctx).create_job(url, cfg))
    click.echo(job.id)


@jobs.command('list', context_settings=CONTEXT_SETTINGS)
@click.option('--limit', '-l', type=click.IntRange(min=1), default=None, help='Сколько последних заданий')
@click.pass_context
def jobs_list(ctx, limit):
    """Задания, новые сверху."""
    for job in _run(_engine(ctx).store.list_jobs(limit)):
        click.echo(
            f'{job.id}  {job.status.value:<9} {job.progress_percent:>3}%  '
            f'{job.broken_links}/{job.total_links} broken  {job.scan_url}'
        )


@jobs.command('show', context_settings=CONTEXT_SETTINGS)
@click.argument('job_id')
@click.option('--results', 'with_results', is_flag=True, help='Вывести и записи о ссылках')
@click.pass_context
def jobs_show(ctx, job_id, with_results):
    """Состояние задания в JSON."""
    job = _run(_engine(ctx).get_job(job_id))
    data = job.summary()
    data['scan_config'] = job.scan_config.to_wire() | {'auth': bool(job.scan_config.auth)}
    if with_results:
        data['results'] = json.loads(dumps(job.results or []))
    click.echo(json.dumps(data, ensure_ascii=False, indent=2))


@jobs.command('logs', context_settings=CONTEXT_SETTINGS)
@click.argument('job_id')
@click.pass_context
def jobs_logs(ctx, job_id):
    """Журнал задания."""
    for entry in _run(_engine(ctx).store.get_logs(job_id)):
        line = f'{entry.created_at.isoformat()} {entry.level.value:<5} {entry.message}'
        if entry.data:
            line += ' ' + json.dumps(entry.data, ensure_ascii=False)
        click.echo(line)


def _control_command(name: str, doc: str):
    @jobs.command(name, context_settings=CONTEXT_SETTINGS)
    @click.argument('job_id')
    @click.pass_context
    def command(ctx, job_id):
        engine = _engine(ctx)
        job = _run(getattr(engine, name)(job_id))
        click.echo(f'{job.id}: {job.status.value}')

    command.__doc__ = doc
    return command


jobs_pause = _control_command('pause', 'Приостановить задание.')
jobs_resume = _control_command('resume', 'Возобновить приостановленное задание.')
jobs_stop = _control_command('stop', 'Остановить задание (частичные результаты сохраняются).')


@jobs.command('stop-all', context_settings=CONTEXT_SETTINGS)
@click.pass_context
def jobs_stop_all(ctx):
    """Остановить все незавершённые задания."""
    stopped = _run(_engine(ctx).stop_all())
    for job in stopped:
        click.echo(f'{job.id}: {job.status.value}')
    click.echo(f'{len(stopped)} job(s) stopped')


# --------------------------------------------------------------------------- #
# worker                                                                      #
# --------------------------------------------------------------------------- #

async def _serve(dispatcher: WorkerDispatcher) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, dispatcher.request_shutdown)
        except (NotImplementedError, RuntimeError):
            # Windows / non-main thread: Ctrl+C falls through as KeyboardInterrupt
            pass
    await dispatcher.run_forever()


@cli.command('worker', context_settings=CONTEXT_SETTINGS)
@click.option('--once', is_flag=True, help='Обработать одно задание из очереди и выйти')
@click.pass_context
def worker(ctx, once):
    """Обрабатывать задания из очереди."""
    dispatcher = WorkerDispatcher(_engine(ctx))
    if not once:
        try:
            asyncio.run(_serve(dispatcher))
        except KeyboardInterrupt:
            click.echo('Worker interrupted')
        return

    result = asyncio.run(dispatcher.run_once())
    if result is None:
        click.echo('No pending jobs')
        return
    if result.error:
        print_error(f'{result.job_id}: {result.error}')
    broken = sum(1 for r in result.results if r.is_broken)
    click.echo(f'{result.job_id}: {len(result.results)} links, {broken} broken')


# --------------------------------------------------------------------------- #
# history                                                                     #
# --------------------------------------------------------------------------- #

def _history(ctx):
    return _engine(ctx).history


def _echo_scan(scan, with_results: bool) -> None:
    data = {
        'id': scan.id,
        'scan_url': scan.scan_url,
        'scan_date': scan.scan_date.isoformat(),
        'duration_seconds': scan.duration_seconds,
        'total_links': len(scan.results),
        'broken_links': len(scan.broken),
    }
    if with_results:
        data['results'] = json.loads(dumps(scan.results))
    click.echo(json.dumps(data, ensure_ascii=False, indent=2))


@cli.group('history', context_settings=CONTEXT_SETTINGS)
def history():
    """Сохранённые сканирования."""


@history.command('list', context_settings=CONTEXT_SETTINGS)
@click.pass_context
def history_list(ctx):
    """Сохранённые сканирования, новые сверху."""
    for scan in _run(_history(ctx).list()):
        click.echo(
            f'{scan.id}  {scan.scan_date.isoformat()}  '
            f'{len(scan.broken)}/{len(scan.results)} broken  {scan.scan_url}'
        )


@history.command('show', context_settings=CONTEXT_SETTINGS)
@click.argument('history_id')
@click.option('--results', 'with_results', is_flag=True, help='Вывести и записи о ссылках')
@click.pass_context
def history_show(ctx, history_id, with_results):
    """Сохранённое сканирование в JSON."""
    scan = _run(_history(ctx).get(history_id))
    if scan is None:
        print_error(f'saved scan {history_id} not found')
    _echo_scan(scan, with_results)


@history.command('last', context_settings=CONTEXT_SETTINGS)
@click.option('--results', 'with_results', is_flag=True, help='Вывести и записи о ссылках')
@click.pass_context
def history_last(ctx, with_results):
    """Последнее сохранённое сканирование."""
    scan = _run(_history(ctx).latest())
    if scan is None:
        click.echo('No scan history')
        return
    _echo_scan(scan, with_results)


@history.command('delete', context_settings=CONTEXT_SETTINGS)
@click.argument('history_id')
@click.pass_context
def history_delete(ctx, history_id):
    """Удалить сохранённое сканирование."""
    _run(_history(ctx).delete(history_id))
    click.echo(f'{history_id}: deleted')


# --------------------------------------------------------------------------- #
# configs                                                                     #
# --------------------------------------------------------------------------- #

def _configs(ctx):
    return _engine(ctx).configs


@cli.group('configs', context_settings=CONTEXT_SETTINGS)
def configs():
    """Именованные конфигурации сканирования."""


@configs.command('save', context_settings=CONTEXT_SETTINGS)
@click.argument('name')
@click.argument('url')
@scan_options
@click.option('--id', 'config_id', default=None, help='Перезаписать конфигурацию с этим id')
@click.pass_context
def configs_save(ctx, name, url, config_path, depth, unlimited, concurrency, config_id):
    """Сохранить URL и конфигурацию под именем NAME."""
    cfg = _scan_config(config_path, depth, unlimited, concurrency)
    saved = _run(_configs(ctx).save(name, url, cfg, config_id=config_id))
    click.echo(saved.id)


@configs.command('list', context_settings=CONTEXT_SETTINGS)
@click.pass_context
def configs_list(ctx):
    """Сохранённые конфигурации, недавно изменённые сверху."""
    for saved in _run(_configs(ctx).list()):
        click.echo(f'{saved.id}  {saved.name}  {saved.url}')


@configs.command('show', context_settings=CONTEXT_SETTINGS)
@click.argument('config_id')
@click.pass_context
def configs_show(ctx, config_id):
    """Конфигурация в JSON (пароль скрыт)."""
    saved = _run(_configs(ctx).get(config_id))
    if saved is None:
        print_error(f'saved configuration {config_id} not found')
    data = saved.model_dump(mode='json', exclude={'config'})
    data['config'] = _masked(saved.config)
    click.echo(json.dumps(data, ensure_ascii=False, indent=2))


@configs.command('delete', context_settings=CONTEXT_SETTINGS)
@click.argument('config_id')
@click.pass_context
def configs_delete(ctx, config_id):
    """Удалить сохранённую конфигурацию."""
    _run(_configs(ctx).delete(config_id))
    click.echo(f'{config_id}: deleted')


@configs.command('run', context_settings=CONTEXT_SETTINGS)
@click.argument('config_id')
@click.pass_context
def configs_run(ctx, config_id):
    """Поставить сохранённую конфигурацию в очередь заданий."""
    job = _run(_engine(ctx).create_job_from_config(config_id))
    click.echo(job.id)


# --------------------------------------------------------------------------- #
# recheck / config                                                            #
# --------------------------------------------------------------------------- #

@cli.command('recheck', context_settings=CONTEXT_SETTINGS)
@click.argument('history_id')
@click.argument('url')
@click.pass_context
def recheck(ctx, history_id, url):
    """Перепроверить одну ссылку сохранённого сканирования."""
    record = _run(_engine(ctx).recheck_history_entry(history_id, url))
    click.echo(record.model_dump_json(indent=2))


@cli.command('config', context_settings=CONTEXT_SETTINGS)
@click.argument('path', type=click.Path(exists=True, dir_okay=False, path_type=Path))
def show_config(path):
    """Показать конфигурацию сканирования в JSON (пароль скрыт)."""
    try:
        cfg = load_config(path)
    except (LinkAuditError, OSError, ValueError, TypeError) as e:
        print_error(f'Ошибка загрузки конфигурации: {e}')
    click.echo(json.dumps(_masked(cfg), ensure_ascii=False, indent=2))


if __name__ == "__main__":
    cli()
