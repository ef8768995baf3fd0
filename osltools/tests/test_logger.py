"""Tests for the osltools logger."""

import os
import shutil
import logging
import tempfile
import unittest


class TestLogger(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.test_dir = tempfile.mkdtemp()

    @classmethod
    def tearDownClass(cls):
        from ..utils import logger as osl_logger

        # Leave a console-only logger behind
        osl_logger.set_up(level='WARNING', startup=False)
        shutil.rmtree(cls.test_dir)

    def test_levels(self):
        from ..utils import logger as osl_logger

        osl_logger.set_up(level='WARNING', startup=False)
        assert(osl_logger.get_level() == logging.WARNING)

        osl_logger.set_level('DEBUG')
        assert(osl_logger.get_level() == logging.DEBUG)

        # No file handler without a log file
        assert(osl_logger.get_level('file') is None)

    def test_log_file(self):
        from ..utils import logger as osl_logger

        log_file = os.path.join(self.test_dir, 'osltools.log')
        osl_logger.set_up(prefix='sub-001', log_file=log_file, level='WARNING')

        logging.getLogger('osltools.covariance').info('writing to the log file')
        for handler in logging.getLogger('osltools').handlers:
            handler.flush()

        with open(log_file, 'r') as f:
            text = f.read()
        assert('writing to the log file' in text)
        assert('sub-001' in text)

    def test_log_or_print(self):
        from ..utils import logger as osl_logger

        osl_logger.set_up(level='WARNING', startup=False)
        with self.assertLogs('osltools.utils.logger', level='INFO') as cm:
            osl_logger.log_or_print('a message')
            osl_logger.log_or_print('a problem', warning=True)
        assert(cm.output[0].endswith('a message'))
        assert(cm.output[1].endswith('WARNING: a problem'))
