import io
import json

import pytest

from issuekit.logging import StructuredLogger, configure_logging, get_logger


def _lines(buf: io.StringIO) -> list[str]:
    return [line for line in buf.getvalue().splitlines() if line]


def test_structured_logger_json_format():
    buf = io.StringIO()
    logger = StructuredLogger(name='issuekit.test.json', json_logging=True, level='INFO', stream=buf)
    logger.log_operation('test_operation', param1='value1', param2=42)

    lines = _lines(buf)
    assert len(lines) == 1
    data = json.loads(lines[0])
    assert data['level'] == 'INFO'
    assert data['operation'] == 'test_operation'
    assert data['param1'] == 'value1'
    assert data['param2'] == 42
    assert 'timestamp' in data


def test_structured_logger_regular_format():
    buf = io.StringIO()
    logger = StructuredLogger(name='issuekit.test.text', json_logging=False, level='INFO', stream=buf)
    logger.log_operation('test_operation', param1='value1')

    out = buf.getvalue()
    assert 'Operation: test_operation' in out
    assert 'INFO' in out


def test_json_mode_dedupes_identical_records():
    buf = io.StringIO()
    logger = StructuredLogger(name='issuekit.test.dedupe', json_logging=True, stream=buf)
    logger.log_sync_batch('o/r', 'issues', 3, page=1)
    logger.log_sync_batch('o/r', 'issues', 3, page=1)
    logger.log_sync_batch('o/r', 'issues', 3, page=2)

    records = [json.loads(line) for line in _lines(buf)]
    assert [r['page'] for r in records] == [1, 2]
    assert records[0]['feed'] == 'issues'
    assert records[0]['inserted'] == 3


def test_timed_operation_logs_performance_and_errors():
    buf = io.StringIO()
    logger = StructuredLogger(name='issuekit.test.timed', json_logging=True, stream=buf)
    with logger.timed_operation('refill', project='o/r'):
        pass
    with pytest.raises(RuntimeError):
        with logger.timed_operation('refill', project='o/r'):
            raise RuntimeError('boom')

    records = [json.loads(line) for line in _lines(buf)]
    perf = [r for r in records if 'duration_ms' in r]
    assert len(perf) == 1
    assert perf[0]['operation'] == 'refill'
    errors = [r for r in records if r['level'] == 'ERROR']
    assert errors[0]['error'] == 'boom'
    assert errors[0]['project'] == 'o/r'


def test_level_filters_debug():
    buf = io.StringIO()
    logger = StructuredLogger(name='issuekit.test.level', level='WARNING', stream=buf)
    logger.info('hidden')
    logger.warning('shown')
    assert 'hidden' not in buf.getvalue()
    assert 'shown' in buf.getvalue()


def test_debug_records_extra_fields():
    buf = io.StringIO()
    logger = StructuredLogger(name='issuekit.test.debug', json_logging=True, level='DEBUG', stream=buf)
    logger.debug('Found GitHub token in GITHUB_TOKEN', source='env')
    data = json.loads(_lines(buf)[0])
    assert data['level'] == 'DEBUG'
    assert data['message'] == 'Found GitHub token in GITHUB_TOKEN'
    assert data['source'] == 'env'


def test_configure_logging_replaces_global():
    first = configure_logging(json_logging=False, level='INFO')
    assert get_logger() is first
    second = configure_logging(json_logging=True, level='DEBUG')
    assert get_logger() is second
    assert second.logger.name == 'issuekit'
    configure_logging()
