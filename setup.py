import os

from setuptools import setup, find_packages

here = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(here, 'README.rst')) as f:
    README = f.read()
with open(os.path.join(here, 'CHANGES.rst')) as f:
    CHANGES = f.read()

requires = [
    'SQLAlchemy>=1.4',
    'rainbow_logging_handler',
    'apscheduler>=3.6,<4',
    'PyYAML',
    'requests',
    'zope.dottedname',
    'base58>=2.0',
    ]

tests_require = [
    'pytest',
    ]

setup(name='runesettle',
      version='0.1',
      description='Settle virtual rune balances to native Bitcoin transactions',
      long_description=README + '\n\n' + CHANGES,
      # https://packaging.python.org/en/latest/distributing.html#classifiers
      classifiers=[
        'Development Status :: 3 - Alpha',
        "Programming Language :: Python",
        'Intended Audience :: Developers',
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: MIT License',
        'Intended Audience :: Financial and Insurance Industry'
        ],
      keywords='bitcoin runes settlement sqlalchemy',
      packages=find_packages(include=['runesettle', 'runesettle.*']),
      include_package_data=True,
      zip_safe=False,
      python_requires='>=3.8',
      install_requires=requires,
      tests_require=tests_require,
      extras_require={'test': tests_require},
      entry_points="""\
      [console_scripts]
      runesettle-initialize-database = runesettle.service.main:initializedb
      runesettle-helper-service = runesettle.service.main:helper
      """,
      )
