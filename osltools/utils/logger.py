"""Logging module for osltools.

The package logger is configured from a yaml template so that every
submodule logger (``osltools.*``) shares one console handler and, optionally,
one rotating log file.
"""

import yaml
import logging
import logging.config


# Housekeeping for logging
# Set logger level to WARNING as default
logging.getLogger("osltools").setLevel(logging.WARNING)

# Initialise logging for this sub-module
osl_logger = logging.getLogger(__name__)

#%% ------------------------------------------------------------


default_config = """
version: 1
loggers:
  osltools:
    level: DEBUG
    handlers: [console, file]
    propagate: false

handlers:
  console:
    class : logging.StreamHandler
    formatter: brief
    level   : DEBUG
    stream  : ext://sys.stdout
  file:
    class : logging.handlers.RotatingFileHandler
    formatter: verbose
    filename: {log_file}
    backupCount: 3
    maxBytes: 102400

formatters:
  brief:
    format: '{prefix} %(message)s'
  default:
    format: '[%(asctime)s] {prefix} %(levelname)-8s : %(message)s'
    datefmt: '%H:%M:%S'
  verbose:
    format: '[%(asctime)s] {prefix} - %(levelname)s - osltools.%(module)s:%(lineno)s : %(message)s'
    datefmt: '%Y-%m-%d %H:%M:%S'

disable_existing_loggers: false

"""


def set_up(prefix='', log_file=None, level=None, startup=True):
    """Initialise the osltools logger.

    Parameters
    ----------
    prefix : str
        Optional prefix to attach to logger output
    log_file : str
        Optional path to a log file to record logger output
    level : {'CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'}
        String indicating initial logging level of the console handler
    startup : bool
        Should we log a start-up message?
    """
    if len(prefix) > 0:
        prefix = prefix + ' :'
    new_config = default_config.format(prefix=prefix, log_file=log_file)
    new_config = yaml.load(new_config, Loader=yaml.FullLoader)

    # Remove log file from dict if not user requested
    if log_file is None:
        new_config['loggers']['osltools']['handlers'] = ['console']
        del new_config['handlers']['file']

    logging.config.dictConfig(new_config)

    if level is not None:
        set_level(level)

    if startup:
        osl_logger.info('osltools logger started')

    if log_file is not None:
        osl_logger.info('logging to file: {0}'.format(log_file))

    # Attribute to let us know if we have setup the logger
    osl_logger.already_setup = True


def set_level(level, handler='console'):
    """Set new logging level for a handler of the osltools logger.

    Parameters
    ----------
    level : {'CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'}
        String indicating new logging level
    handler : str
        The handler to set the level for. Defaults to 'console'.
    """
    logger = logging.getLogger('osltools')
    for hdlr in logger.handlers:
        if hdlr.get_name() == handler:
            if level in ['INFO', 'DEBUG']:
                logger.info("osltools logger: handler '{0}' level set to '{1}'".format(hdlr.get_name(), level))
            hdlr.setLevel(getattr(logging, level))


def get_level(handler='console'):
    """Return current logging level of a handler of the osltools logger.

    Parameters
    ----------
    handler : str
        The handler to get the level for. Defaults to 'console'.

    Returns
    -------
    level : int
        Current logging level, None if the handler does not exist.
    """
    logger = logging.getLogger('osltools')
    for hdlr in logger.handlers:
        if hdlr.get_name() == handler:
            return hdlr.level


def log_or_print(msg, warning=False):
    """Execute logger.info if an osltools logger has been setup, otherwise print.

    Parameters
    ----------
    msg : str
        Message to log/print.
    warning : bool
        Is the msg a warning? Defaults to False, which will print info.
    """
    if warning:
        msg = f"WARNING: {msg}"
    if hasattr(osl_logger, "already_setup"):
        osl_logger.info(msg)
    else:
        print(msg)
