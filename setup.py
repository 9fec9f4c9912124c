import io
from setuptools import setup

GITHUB_URL = 'https://github.com/dnschneid/crouton'

VERSION = None
with io.open('crouton/__init__.py', encoding='utf-8') as infile:
  for line in infile:
    line = line.strip()
    if line.startswith('VERSION ='):
      VERSION = line.split('=', 1)[1].strip().strip("'")

assert VERSION is not None

with io.open('README.rst', encoding='utf8') as infile:
  long_description = infile.read()

setup(
    name='crouton-enter',
    packages=['crouton'],
    version=VERSION,
    description="Enter a chroot alongside the host and keep the host awake",
    long_description=long_description,
    url=GITHUB_URL,
    keywords=['chroot', 'linux', 'chromeos'],
    classifiers=[],
    python_requires='>=3.6',
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': [
            'enter-chroot=crouton.__main__:main',
            'croutonpowerd=crouton.powerd:main',
        ],
    }
)
