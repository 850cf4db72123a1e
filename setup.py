#!/usr/bin/env python
"""Setuptools distribution file."""
import os
from setuptools import setup


def _get_here(fname):
    return os.path.join(os.path.dirname(__file__), fname)


def _get_long_description(fname, encoding='utf8'):
    return open(fname, 'r', encoding=encoding).read()


setup(name='telnetapp',
      version='0.1.0',
      license='ISC',
      description="Serve prompt_toolkit applications over Telnet with asyncio",
      long_description=_get_long_description(fname=_get_here('README.rst')),
      packages=['telnetapp'],
      package_data={'': ['README.rst'], },
      install_requires=['prompt_toolkit>=3.0.36'],
      extras_require={
          'test': ['pytest', 'pytest-asyncio'],
      },
      python_requires='>=3.8',
      entry_points={
         'console_scripts': [
             'telnetapp-server = telnetapp.server:main',
         ]},
      platforms='any',
      zip_safe=True,
      keywords=', '.join(('telnet', 'server', 'naws', 'ttype', 'asyncio',
                          'prompt_toolkit', 'talker')),
      classifiers=['License :: OSI Approved :: ISC License (ISCL)',
                   'Programming Language :: Python :: 3',
                   'Intended Audience :: Developers',
                   'Development Status :: 4 - Beta',
                   'Topic :: System :: Networking',
                   'Topic :: Terminals :: Telnet',
                   'Topic :: System :: Shells',
                   'Topic :: Internet',
                   ],
      )
