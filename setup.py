#!/usr/bin/env python3

from setuptools import setup
import time

setup(
  name='''OpenIt''',
  version=time.strftime('%Y.%m.%d.%H.%M.%S', time.gmtime(1760659200)),
  description='''Find the applications that open a file or MIME-type and manage MIME associations.''',
  author='''Xyne''',
  license='''GPL-2.0-only''',
  py_modules=['''OpenIt'''],
  python_requires='''>=3.6''',
  install_requires=['''pyxdg'''],
  extras_require={
    'test' : ['''pytest>=7'''],
  },
)
