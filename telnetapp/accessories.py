"""Accessory functions."""
# std imports
import importlib.metadata
import importlib
import traceback
import logging

__all__ = ('make_logger', 'function_lookup', 'log_exception', 'get_version')


def get_version():
    return importlib.metadata.version("telnetapp")


_DEFAULT_LOGFMT = ' '.join(('%(asctime)s',
                            '%(levelname)s',
                            '%(filename)s:%(lineno)d',
                            '%(message)s'))


def make_logger(name, loglevel='info', logfile=None, logfmt=_DEFAULT_LOGFMT):
    """Create and return simple logger for given arguments."""
    lvl = getattr(logging, loglevel.upper())
    logging.getLogger().setLevel(lvl)

    _cfg = {'format': logfmt}
    if logfile:
        _cfg['filename'] = logfile
    logging.basicConfig(**_cfg)
    return logging.getLogger(name)


def function_lookup(pymod_path):
    """Return callable function target from standard module.function path."""
    module_name, func_name = pymod_path.rsplit('.', 1)
    module = importlib.import_module(module_name)
    shell_function = getattr(module, func_name)
    assert callable(shell_function), shell_function
    return shell_function


def log_exception(log_fn, e_type, e_value, e_tb):
    """
    Log a traceback one line at a time through ``log_fn``.

    Used as ``log_exception(logger.warning, *sys.exc_info())`` where an
    exception is caught at a boundary that must keep running.
    """
    rows_tbk = [line for line in
                '\n'.join(traceback.format_tb(e_tb)).split('\n')
                if line]
    rows_exc = [line.rstrip() for line in
                traceback.format_exception_only(e_type, e_value)]

    for line in rows_tbk + rows_exc:
        log_fn(line)
