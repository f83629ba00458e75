import logging

import tfenvs
from tfenvs import (
    config,
)


def configure_script_logging(*loggers):
    assert len(logging.getLogger().handlers) == 0, 'Logging is already configured.'
    _configure_non_app_logging(*loggers)


def get_test_logger(*names):
    return logging.getLogger(_test_logger_name(names))


def _test_logger_name(names):
    return '.'.join(('test', *names))


def configure_test_logging(*loggers):
    prefix = _test_logger_name('')
    expected = [(logger.name, True) for logger in loggers]
    actual = [(logger.name, logger.name.startswith(prefix)) for logger in loggers]
    assert actual == expected, actual
    _configure_non_app_logging(get_test_logger(), *loggers)


log_format = ' '.join([
    '%(asctime)s',
    '%(levelname)+7s',
    '%(threadName)s',
    '%(name)s:',
    '%(message)s'
])


def _configure_non_app_logging(*loggers):
    _configure_log_levels(*loggers)
    root_logger = logging.getLogger()
    if root_logger.handlers:
        # Test runners like pytest install several handlers
        root_formatter = logging.Formatter(log_format)
        for handler in root_logger.handlers:
            handler.setFormatter(root_formatter)
    else:
        logging.basicConfig(format=log_format)


def _configure_log_levels(*loggers):
    tfenvs_level_ = tfenvs_log_level()
    root_level = root_log_level()
    logging.getLogger().setLevel(root_level)
    # Only log AWS request & response bodies when TFENVS_DEBUG is 2
    for aws_log in (boto3_log, botocore_log):
        aws_log.setLevel(aws_log_level())
    for logger in {*loggers, tfenvs.log}:
        logger.setLevel(tfenvs_level_)


def root_log_level():
    return [logging.WARN, logging.INFO, logging.DEBUG][config.debug]


def tfenvs_log_level():
    return [logging.INFO, logging.DEBUG, logging.DEBUG][config.debug]


def aws_log_level():
    return [logging.WARN, logging.WARN, logging.DEBUG][config.debug]


boto3_log = logging.getLogger('boto3')
botocore_log = logging.getLogger('botocore')
