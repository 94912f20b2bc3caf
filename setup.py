#!/usr/bin/env python

import os
import re
from setuptools import setup

version_file = os.path.join('conn_adapter', '_version.py')
with open(version_file, 'rb') as f:
    version_data = f.read().strip().decode('ascii')

version_re = re.compile(r'((?:\d+)\.(?:\d+)\.(?:\d+))')
version = version_re.search(version_data).group(0)

tests_require = [
    'pytest',
    'pytest-cov',
    'pytest-timeout',
    'PyYAML'
]

dev_require = [
    'invoke',
    'nox',
]

setup(name='conn-adapter',
      version=version,
      description='A connection adapter contract for HTTP applications, with a streaming multipart parser',
      license='Apache',
      platforms='any',
      zip_safe=False,
      packages=[
          'conn_adapter',
      ],
      python_requires='>=3.10',
      extras_require={
          'test': tests_require,
          'dev': tests_require + dev_require,
          'fuzz': ['atheris'],
      },
      classifiers=[
        'Development Status :: 3 - Alpha',
        'Environment :: Web Environment',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Programming Language :: Python :: 3.13',
        'Topic :: Internet :: WWW/HTTP :: HTTP Servers',
        'Topic :: Software Development :: Libraries :: Python Modules'
      ],
     )
