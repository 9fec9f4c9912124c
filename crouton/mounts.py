"""
Mount helpers for preparing a chroot.

Every mount made on behalf of a chroot is paired with a release guard on a
`CleanupStack`. Guards are released in the reverse order they were pushed,
so mounts nested below the chroot root are always detached before the root
itself.
"""

import errno
import logging
import os

import crouton

MOUNTINFO_PATH = '/proc/self/mountinfo'
MAXSYMLINKS = 40


class MountGuard(object):
  """Detaches one mount point when released."""

  def __init__(self, mounter, target):
    self.mounter = mounter
    self.target = target

  def release(self):
    self.mounter.umount(self.target)

  def __repr__(self):
    return 'MountGuard({!r})'.format(self.target)


class CallbackGuard(object):
  """Calls ``fun(*args)`` when released."""

  def __init__(self, fun, *args):
    self.fun = fun
    self.args = args

  def release(self):
    self.fun(*self.args)


class CleanupStack(object):
  """
  Ordered stack of release guards. Closing the stack (or leaving its
  ``with`` block for any reason) releases every guard exactly once, most
  recent first. Failures while releasing are logged and ignored.
  """

  def __init__(self):
    self._guards = []

  def __len__(self):
    return len(self._guards)

  def push(self, guard):
    self._guards.append(guard)
    return guard

  def callback(self, fun, *args):
    return self.push(CallbackGuard(fun, *args))

  def pop_all(self):
    """
    Move every guard to a new stack and return it. This stack is left
    empty, so closing it releases nothing.
    """
    other = CleanupStack()
    other._guards, self._guards = self._guards, []
    return other

  def close(self):
    while self._guards:
      guard = self._guards.pop()
      try:
        guard.release()
      except Exception as ex:  # pylint: disable=broad-except
        logging.debug("Ignoring failed cleanup of %r: %s", guard, ex)

  def __enter__(self):
    return self

  def __exit__(self, *_):
    self.close()
    return False


def unescape_mountinfo(field):
  """Decode the octal escapes (e.g. ``\\040``) the kernel uses in mountinfo."""
  if '\\' not in field:
    return field

  out = []
  idx = 0
  while idx < len(field):
    chunk = field[idx + 1:idx + 4]
    if (field[idx] == '\\' and len(chunk) == 3
        and all(char in '01234567' for char in chunk)):
      out.append(chr(int(chunk, 8)))
      idx += 4
    else:
      out.append(field[idx])
      idx += 1
  return ''.join(out)


def read_mount_points(mountinfo_path=MOUNTINFO_PATH):
  """Return the set of mount points currently listed in ``mountinfo_path``."""
  mount_points = set()
  with open(mountinfo_path, encoding='utf8', errors='surrogateescape') \
      as infile:
    for line in infile:
      fields = line.split()
      if len(fields) > 4:
        mount_points.add(unescape_mountinfo(fields[4]))
  return mount_points


def fixabslinks(root, path):
  """
  Return the location of ``path`` inside the chroot at ``root`` with every
  symlink along the way resolved as if ``root`` were ``/``. Absolute link
  targets and ``..`` components can never climb out of ``root``. Components
  that don't exist yet are kept as given.
  """
  root = os.path.normpath(root)
  pending = [part for part in reversed(path.split('/')) if part]
  resolved = []
  nlinks = 0

  while pending:
    part = pending.pop()
    if part == '.':
      continue
    if part == '..':
      if resolved:
        resolved.pop()
      continue

    candidate = os.path.join(root, *(resolved + [part]))
    if not os.path.islink(candidate):
      resolved.append(part)
      continue

    nlinks += 1
    if nlinks > MAXSYMLINKS:
      raise OSError(errno.ELOOP, os.strerror(errno.ELOOP),
                    os.path.join(root, path.lstrip('/')))
    link = os.readlink(candidate)
    if link.startswith('/'):
      resolved = []
    pending.extend(part for part in reversed(link.split('/')) if part)

  return os.path.join(root, *resolved)


def parse_options(glibc, options):
  """
  Split a comma separated mount option string into mount(2) flags and the
  filesystem specific data string.
  """
  flag_names = {
      'ro': glibc.MS_RDONLY,
      'nosuid': glibc.MS_NOSUID,
      'nodev': glibc.MS_NODEV,
      'noexec': glibc.MS_NOEXEC,
  }
  # these just mean "don't set the restricting flag"
  clear_names = ('rw', 'suid', 'dev', 'exec')

  flags = 0
  data = []
  for option in (options or '').split(','):
    option = option.strip()
    if not option or option in clear_names:
      continue
    if option in flag_names:
      flags |= flag_names[option]
    else:
      data.append(option)
  return flags, ','.join(data) or None


def _cstr(value):
  if value is None:
    return None
  return os.fsencode(value)


class Mounter(object):
  """
  Thin layer over mount(2)/umount2(2) that also answers whether a path is
  currently a mount point.
  """

  def __init__(self, glibc=None, mountinfo_path=MOUNTINFO_PATH):
    if glibc is None:
      glibc = crouton.get_glibc()
    self.glibc = glibc
    self.mountinfo_path = mountinfo_path

  def mounted(self, path):
    return os.path.realpath(path) in read_mount_points(self.mountinfo_path)

  def mount(self, source, target, fstype=None, flags=0, data=None):
    logging.debug("mount %s -> %s (type=%s, flags=0x%x, data=%s)",
                  source, target, fstype, flags, data)
    result = self.glibc.mount(_cstr(source), _cstr(target), _cstr(fstype),
                              flags, _cstr(data))
    if result != 0:
      crouton.raise_errno('Failed to mount {}'.format(source), target)

  def umount(self, target):
    logging.debug("umount %s", target)
    result = self.glibc.umount2(_cstr(target), self.glibc.MNT_DETACH)
    if result != 0:
      crouton.raise_errno('Failed to unmount', target)

  def bind(self, source, target, options=None, recursive=False):
    """
    Bind ``source`` onto ``target``. Bind mounts ignore flags on the initial
    call, so ``options`` are applied with a second remount.
    """
    flags = self.glibc.MS_BIND
    if recursive:
      flags |= self.glibc.MS_REC
    self.mount(source, target, None, flags)
    if options:
      self.remount(target, options)

  def remount(self, target, options):
    """Change the per-mount flags of the bind mount at ``target``."""
    optflags, _ = parse_options(self.glibc, options)
    self.mount(None, target, None,
               self.glibc.MS_REMOUNT | self.glibc.MS_BIND | optflags)

  def tmpfs(self, name, target, options=None):
    flags, data = parse_options(self.glibc, options)
    self.mount(name, target, 'tmpfs', flags, data)

  def make_shared(self, target):
    self.mount(None, target, None, self.glibc.MS_SHARED)


class ChrootMounts(object):
  """
  Mount helper bound to one chroot and one cleanup stack. Targets are paths
  inside the chroot and are resolved with `fixabslinks` before use. A target
  that is already a mount point is left alone and gets no guard.
  """

  def __init__(self, root, mounter, cleanup, track=True):
    self.root = root
    self.mounter = mounter
    self.cleanup = cleanup
    self.track = track

  def path(self, path):
    return fixabslinks(self.root, path)

  def _claim(self, path):
    target = self.path(path)
    if self.mounter.mounted(target):
      logging.debug("%s is already mounted", target)
      return None
    if not os.path.isdir(target):
      os.makedirs(target)
    return target

  def _guard(self, target):
    if self.track:
      self.cleanup.push(MountGuard(self.mounter, target))

  def bind(self, source, path, options=None, optional=False, recursive=False):
    """Bind mount host ``source`` at ``path`` in the chroot."""
    if optional and not os.path.exists(source):
      logging.debug("Skipping bind of missing %s", source)
      return False
    target = self._claim(path)
    if target is None:
      return False
    self.mounter.bind(source, target, recursive=recursive)
    self._guard(target)
    if options:
      self.mounter.remount(target, options)
    return True

  def tmpfs(self, name, path, options=None):
    """Mount a fresh tmpfs called ``name`` at ``path`` in the chroot."""
    target = self._claim(path)
    if target is None:
      return False
    self.mounter.tmpfs(name, target, 'rw,' + options if options else 'rw')
    self._guard(target)
    return True

  def symlink(self, link_target, path):
    """Equivalent of ``ln -sfT link_target path`` inside the chroot."""
    parent, name = os.path.split(path.rstrip('/'))
    linkpath = os.path.join(self.path(parent), name)
    if os.path.islink(linkpath) or os.path.isfile(linkpath):
      os.remove(linkpath)
    os.symlink(link_target, linkpath)
    return linkpath
