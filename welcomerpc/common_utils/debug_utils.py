import logging

VERBOSE = 5
'''chattier than DEBUG, e.g. per-frame traces.'''
SUCCESS = 100
'''above CRITICAL, so milestones such as "server listening" survive any filter.'''

LOG_LEVEL_NAMES = ('VERBOSE', 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL', 'SUCCESS')

LOG_FORMAT = '(%(process)d)|%(name)s|[%(levelname)s] %(asctime)s: %(message)s'

for _name, _level in (('VERBOSE', VERBOSE), ('SUCCESS', SUCCESS)):
    if logging.getLevelName(_level) != _name:
        logging.addLevelName(_level, _name)

def _level_method(level: int):
    def log_at(self: logging.Logger, msg, *args, **kwargs):
        if self.isEnabledFor(level):
            self._log(level, msg, args, **kwargs)
    log_at.__name__ = logging.getLevelName(level).lower()
    return log_at

class Logger(logging.Logger):
    '''`logging.Logger` with `verbose()` and `success()`.'''
    verbose = _level_method(VERBOSE)
    success = _level_method(SUCCESS)

logging.setLoggerClass(Logger)

def get_logger(name: str) -> Logger:
    '''
    Get a welcomerpc logger. Loggers created by other libraries before this module
    was imported are upgraded in place.
    '''
    logger = logging.getLogger(name)
    if not isinstance(logger, Logger):
        logger.__class__ = Logger
    return logger   # type: ignore

def get_log_level(level: str|int) -> int:
    '''Convert a level name (including VERBOSE/SUCCESS) to its numeric value.'''
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name not in LOG_LEVEL_NAMES:
        raise ValueError(f'Unknown log level: `{level}`, expected one of {", ".join(LOG_LEVEL_NAMES)}.')
    return logging.getLevelName(name)

def setup_logging(level: str|int='INFO'):
    '''Configure the root logger for command line entry points.'''
    logging.basicConfig(level=get_log_level(level), format=LOG_FORMAT)


__all__ = ['VERBOSE', 'SUCCESS', 'LOG_LEVEL_NAMES', 'LOG_FORMAT', 'Logger', 'get_logger', 'get_log_level', 'setup_logging']
