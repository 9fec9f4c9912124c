"""
Enter a crouton chroot alongside the host system and keep the host awake
while it is in use.

The chroot is entered with plain chroot(2) as root: the host's pseudo
filesystems are bind mounted into the guest, group ids are harmonized, and
the requested program is started inside the new root. Every mount is undone
in reverse order when the program exits.
"""

import ctypes
import inspect
import json
import logging
import os
import pprint
import signal
import subprocess
import textwrap

VERSION = '0.2.0'


class ChrootError(Exception):
  """An operational failure entering the chroot (exit status 1)."""


def get_glibc():
  """
  Return a ctypes wrapper around glibc. Only wraps functions needed by this
  package.
  """

  glibc = ctypes.CDLL('libc.so.6', use_errno=True)

  # http://man7.org/linux/man-pages/man2/chroot.2.html
  glibc.chroot.restype = ctypes.c_int
  glibc.chroot.argtypes = [ctypes.c_char_p]

  # http://man7.org/linux/man-pages/man2/setresuid.2.html
  glibc.setresuid.restype = ctypes.c_int
  glibc.setresuid.argtypes = [ctypes.c_uint, ctypes.c_uint, ctypes.c_uint]
  glibc.setresgid.restype = ctypes.c_int
  glibc.setresgid.argtypes = [ctypes.c_uint, ctypes.c_uint, ctypes.c_uint]

  # http://man7.org/linux/man-pages/man2/mount.2.html
  glibc.mount.restype = ctypes.c_int
  glibc.mount.argtypes = [ctypes.c_char_p, ctypes.c_char_p, ctypes.c_char_p,
                          ctypes.c_ulong,
                          ctypes.c_void_p]

  # http://man7.org/linux/man-pages/man2/umount.2.html
  glibc.umount2.restype = ctypes.c_int
  glibc.umount2.argtypes = [ctypes.c_char_p, ctypes.c_int]

  glibc.MS_RDONLY = 0x1
  glibc.MS_NOSUID = 0x2
  glibc.MS_NODEV = 0x4
  glibc.MS_NOEXEC = 0x8
  glibc.MS_REMOUNT = 0x20
  glibc.MS_BIND = 0x1000
  glibc.MS_REC = 0x4000
  glibc.MS_SHARED = 0x100000
  glibc.MNT_DETACH = 0x2

  return glibc


def raise_errno(message, path=None):
  """Raise an OSError for the errno left behind by the last glibc call."""
  err = ctypes.get_errno()
  raise OSError(err, '{}: {}'.format(message, os.strerror(err)), path)


def process_environment(env_dict):
  """Given an environment dictionary, merge any lists with pathsep and return
     the new dictionary."""
  out_dict = {}
  for key, value in env_dict.items():
    if isinstance(value, list):
      out_dict[key] = ':'.join(value)
    elif isinstance(value, str):
      out_dict[key] = value
    else:
      out_dict[key] = str(value)
  return out_dict


def exit_status(returncode):
  """Map a Popen returncode to a shell style exit status."""
  if returncode < 0:
    return 128 - returncode
  return returncode


def raise_exit(signum, _):
  raise SystemExit(128 + signum)


def install_signal_handlers():
  """Turn hangups and termination into a normal, unwinding exit."""
  for signum in (signal.SIGHUP, signal.SIGTERM):
    signal.signal(signum, raise_exit)


DEFAULT_PATH = ['/usr/local/sbin', '/usr/local/bin', '/usr/sbin', '/usr/bin',
                '/sbin', '/bin']


def serialize(obj):
  """
  Return a serializable representation of the object. If the object has an
  `as_dict` method, then it will call and return the output of that method.
  Otherwise return the object itself.
  """
  if hasattr(obj, 'as_dict'):
    fun = getattr(obj, 'as_dict')
    if callable(fun):
      return fun()

  return obj


class ConfigObject(object):
  """
  Provides simple serialization to a dictionary based on the assumption that
  all args in the __init__() function are fields of this object.
  """

  @classmethod
  def get_field_names(cls):
    """
    The order of fields in the tuple representation is the same as the order
    of the fields in the __init__ function
    """

    # NOTE(josh): args[0] is `self`
    return inspect.getfullargspec(cls.__init__).args[1:]

  def as_dict(self):
    """
    Return a dictionary mapping field names to their values only for fields
    specified in the constructor
    """
    return {field: serialize(getattr(self, field))
            for field in self.get_field_names()}


def get_default(obj, default):
  """
  If obj is not `None` then return it. Otherwise return default.
  """
  if obj is None:
    return default

  return obj


class Exec(ConfigObject):
  """
  Simple object to hold together the path, argument vector, environment and
  working directory of a program started inside the chroot.
  """

  def __init__(self, argv=None, exbin=None, env=None, cwd=None, **_):
    if not argv:
      raise ValueError('an argument vector is required')
    self.argv = list(argv)
    self.exbin = exbin
    if env is not None:
      self.env = process_environment(env)
    else:
      self.env = process_environment(dict(PATH=DEFAULT_PATH))
    self.cwd = get_default(cwd, '/')

  def popen(self, preexec_fn=None, **kwargs):
    # NOTE: cwd is applied by preexec_fn after the chroot, never here.
    return subprocess.Popen(self.argv, executable=self.exbin, env=self.env,
                            preexec_fn=preexec_fn, **kwargs)


def load_config(config_path, config):
  """
  Execute the python file at ``config_path`` with ``config`` as its globals
  so that top level assignments override the defaults.
  """
  with open(config_path, encoding='utf8') as infile:
    # pylint: disable=W0122
    exec(infile.read(), config)

  config.pop('__builtins__', None)
  return config


def warn_unknown_keys(config, knownkeys):
  """Log a warning for config variables that nothing will consume."""
  unknownkeys = [key for key in config
                 if not key.startswith('_') and key not in knownkeys]
  if unknownkeys:
    logging.warning("Unrecognized config variables: %s",
                    ", ".join(sorted(unknownkeys)))
  return unknownkeys


def dump_config(outfile, configobj, vardocs):
  """
  Dump the configuration of ``configobj`` to ``outfile`` as a python file
  that `load_config` can read back.
  """

  config = configobj.as_dict()

  ppr = pprint.PrettyPrinter(indent=2)
  for key in configobj.get_field_names():
    helptext = vardocs.get(key, None)
    if helptext:
      for line in textwrap.wrap(helptext, 78):
        outfile.write('# ' + line + '\n')
    value = config[key]
    if isinstance(value, dict):
      outfile.write('{} = {}\n\n'.format(key, json.dumps(value, indent=2)))
    else:
      outfile.write('{} = {}\n\n'.format(key, ppr.pformat(value)))
