import logging

from shared.log import ContextFormatter


def _record(msg, args=(), **extra):
    return logging.makeLogRecord({
        "name": "server.delivery", "levelname": "WARNING", "levelno": logging.WARNING,
        "msg": msg, "args": args, **extra,
    })


def test_context_follows_level_and_timestamp():
    formatter = ContextFormatter(fmt='[%(levelname)-8s][%(asctime)s][%(name)-5s]: %(message)s',
                                 datefmt='%Y-%m-%d %H:%M:%S')
    record = _record("Push %s failed", ("receive_message",),
                     user_id="0123456789abcdef01234567", conversation_id="fedcba9876543210fedcba98")

    line = formatter.format(record)

    assert line.startswith("[WARNING ][")
    assert line.endswith("]: [user=01234567 conv=fedcba98] Push receive_message failed")
    assert record.msg == "Push %s failed"


def test_file_layout_puts_context_in_message_column():
    formatter = ContextFormatter(fmt='%(asctime)s | %(name)-30s | %(levelname)-8s | %(message)s')
    line = formatter.format(_record("Session closed", session_id="a1b2c3", event="leave"))

    assert line.split(" | ")[-1] == "[session=a1b2c3 event=leave] Session closed"


def test_no_context_leaves_message_untouched():
    formatter = ContextFormatter(fmt='%(levelname)s: %(message)s')

    assert formatter.format(_record("plain")) == "WARNING: plain"
