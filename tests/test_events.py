import importlib
import json


class FakeLogger:
    def __init__(self):
        self.lines = []

    def info(self, msg):
        self.lines.append(str(msg))


def test_event_bus_emits_structured_json():
    events = importlib.import_module('core.events')
    fake_logger = FakeLogger()
    bus = events.EventBus(structured_logs=True, debug_logging=False, logger=fake_logger)
    bus.emit('candidate_flagged', rule_id='r1', title='Heat', flagged_at=1.5)
    bus.emit('schedule_skipped', rule_id='r1', reason='scan already running')
    first = json.loads(fake_logger.lines[0])
    assert first == {'event': 'candidate_flagged', 'rule_id': 'r1', 'title': 'Heat', 'flagged_at': 1.5}
    assert json.loads(fake_logger.lines[1])['reason'] == 'scan already running'


def test_event_bus_plain_lines_and_unserializable_values():
    events = importlib.import_module('core.events')
    fake_logger = FakeLogger()
    bus = events.EventBus(structured_logs=False, debug_logging=False, logger=fake_logger)
    bus.emit('scan_completed', scan_id='s1', flagged=2)
    bus.emit('maintainer_started')
    assert fake_logger.lines == ['scan_completed: scan_id=s1 flagged=2', 'maintainer_started']

    structured = events.EventBus(structured_logs=True, debug_logging=False, logger=fake_logger)
    structured.emit('odd', value=object())
    assert json.loads(fake_logger.lines[-1])['event'] == 'odd'


def test_event_logger_does_not_propagate():
    events = importlib.import_module('core.events')
    logger = events.make_event_logger('media_maintainer.events.test')
    again = events.make_event_logger('media_maintainer.events.test')
    assert logger is again
    assert logger.propagate is False
    assert len(logger.handlers) == 1
