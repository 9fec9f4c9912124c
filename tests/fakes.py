"""
Stand-ins for the privileged parts of mounting so the chroot logic can be
exercised as an unprivileged user.
"""

import errno
import types

FAKE_GLIBC = types.SimpleNamespace(
    MS_RDONLY=0x1,
    MS_NOSUID=0x2,
    MS_NODEV=0x4,
    MS_NOEXEC=0x8,
    MS_REMOUNT=0x20,
    MS_BIND=0x1000,
    MS_REC=0x4000,
    MS_SHARED=0x100000,
    MNT_DETACH=0x2,
)


class FakeMounter(object):
  """Records mount operations and keeps its own table of mount points."""

  def __init__(self, mounted=(), fail_on=None):
    self.points = set(mounted)
    self.fail_on = fail_on
    self.calls = []
    self.glibc = FAKE_GLIBC

  def mounted(self, path):
    return path in self.points

  def _mount(self, kind, source, target):
    if target == self.fail_on:
      raise OSError(errno.EPERM, 'Operation not permitted', target)
    self.calls.append((kind, source, target))
    self.points.add(target)

  def bind(self, source, target, options=None, recursive=False):
    self._mount('rbind' if recursive else 'bind', source, target)
    if options:
      self.remount(target, options)

  def remount(self, target, options):
    self.calls.append(('remount', target, options))

  def tmpfs(self, name, target, options=None):
    self._mount('tmpfs', name, target)

  def make_shared(self, target):
    self.calls.append(('shared', target))

  def umount(self, target):
    self.calls.append(('umount', target))
    self.points.discard(target)

  @property
  def mount_targets(self):
    return [call[2] for call in self.calls
            if call[0] in ('bind', 'rbind', 'tmpfs')]

  @property
  def umount_targets(self):
    return [call[1] for call in self.calls if call[0] == 'umount']
