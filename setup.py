import pathlib

from setuptools import setup

# The directory containing this file
HERE = pathlib.Path(__file__).parent

# The text of the README file
README = (HERE / "README.md").read_text()

# Requirement categories
reqs = ['numpy', 'scipy', 'matplotlib', 'mne>=1.7,<1.11', 'pyyaml>=5.1',
        'dask', 'distributed', 'h5io', 'nibabel']
dev_reqs = ['setuptools>=41.0.1', 'pytest', 'pytest-cov', 'coverage', 'flake8']

name = 'osltools'

setup(name=name,
      version='0.3.0',
      description='OHBA Software Library tools for M/EEG covariance, beamforming and spectrograms',
      long_description=README,
      long_description_content_type="text/markdown",
      author='OHBA Analysis Group',
      license='MIT',

      # Choose your license
      # See https://pypi.python.org/pypi?%3Aaction=list_classifiers
      classifiers=[
          'Development Status :: 4 - Beta',

          # Indicate who your project is intended for
          'Intended Audience :: Science/Research',
          'Topic :: Scientific/Engineering :: Bio-Informatics',
          'Topic :: Scientific/Engineering :: Information Analysis',
          'Topic :: Scientific/Engineering :: Mathematics',

          'Programming Language :: Python :: 3',
          'Programming Language :: Python :: 3.8',
          'Programming Language :: Python :: 3.9',
          'Programming Language :: Python :: 3.10',
          'Programming Language :: Python :: 3.11',
      ],

      python_requires='>=3.8',
      install_requires=reqs,
      extras_require={
          'dev': dev_reqs,
          'full': dev_reqs,
      },

      zip_safe=False,
      entry_points={
          'console_scripts': [
              'osltools_check_opt = osltools.opt:main',
              'osltools_recompile_fieldtrip = osltools.utils.fieldtrip:main',
          ]},

      packages=['osltools', 'osltools.tests', 'osltools.utils',
                'osltools.source_recon'],
      )
