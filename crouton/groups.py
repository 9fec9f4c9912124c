"""
Read the text user and group databases of the host and the chroot, and keep
the ids of hardware access groups in agreement between them.
"""

import collections
import logging
import os
import tempfile

PasswdEntry = collections.namedtuple(
    'PasswdEntry', ['name', 'uid', 'gid', 'home', 'shell'])

GroupEntry = collections.namedtuple(
    'GroupEntry', ['name', 'gid', 'members'])

# Groups whose ids must match the host so that shared devices are usable
CRITICAL_GROUPS = ('audio', 'video')


def read_records(path):
  """
  Yield the colon separated fields of every non-empty, non-comment line of
  ``path``.
  """
  with open(path, encoding='utf8') as infile:
    for line in infile:
      line = line.rstrip('\n')
      if not line.strip() or line.startswith('#'):
        continue
      yield line.split(':')


def read_passwd(path):
  entries = []
  for fields in read_records(path):
    if len(fields) < 7:
      continue
    try:
      entries.append(PasswdEntry(fields[0], int(fields[2]), int(fields[3]),
                                 fields[5], fields[6]))
    except ValueError:
      logging.debug("Ignoring malformed passwd line for %s", fields[0])
  return entries


def read_groups(path):
  entries = []
  for fields in read_records(path):
    if len(fields) < 4:
      continue
    try:
      gid = int(fields[2])
    except ValueError:
      logging.debug("Ignoring malformed group line for %s", fields[0])
      continue
    members = [member for member in fields[3].split(',') if member]
    entries.append(GroupEntry(fields[0], gid, members))
  return entries


def lookup_user(passwd_path, user):
  """
  Return the `PasswdEntry` for ``user``, which may be a user name or a
  numeric uid. Raise KeyError if there is no such user.
  """
  user = str(user)
  entries = read_passwd(passwd_path)
  if user.isdigit():
    uid = int(user)
    for entry in entries:
      if entry.uid == uid:
        return entry
  else:
    for entry in entries:
      if entry.name == user:
        return entry
  raise KeyError(user)


def find_gid(groups, name):
  for entry in groups:
    if entry.name == name:
      return entry.gid
  return None


def supplementary_gids(group_path, username, gid):
  """The primary ``gid`` plus every group listing ``username`` as member."""
  gids = [gid]
  for entry in read_groups(group_path):
    if username in entry.members and entry.gid not in gids:
      gids.append(entry.gid)
  return gids


def unused_gid(used, start):
  """Return the first gid at or above ``start`` that is not in ``used``."""
  gid = start
  while gid in used:
    gid += 1
  return gid


def set_gid_lines(lines, name, gid):
  """Return ``lines`` with the gid of group ``name`` replaced."""
  out = []
  for line in lines:
    fields = line.rstrip('\n').split(':')
    if len(fields) >= 4 and fields[0] == name and not line.startswith('#'):
      fields[2] = str(gid)
      line = ':'.join(fields) + '\n'
    out.append(line)
  return out


def rewrite_file(path, lines):
  """Atomically replace the contents of ``path``, keeping its mode."""
  mode = os.stat(path).st_mode & 0o7777
  dirname = os.path.dirname(path)
  fd, tmp_path = tempfile.mkstemp(prefix='.group', dir=dirname)
  try:
    with os.fdopen(fd, 'w', encoding='utf8') as outfile:
      outfile.writelines(lines)
    os.chmod(tmp_path, mode)
    os.replace(tmp_path, path)
  except BaseException:
    os.unlink(tmp_path)
    raise


def harmonize_gids(host_group_path, chroot_group_path,
                   names=CRITICAL_GROUPS):
  """
  Give each group in ``names`` the same gid in the chroot as on the host. If
  the host's gid is already taken by another chroot group, that group is
  moved to the first unused gid at or above it first.

  Groups missing on either side are skipped. Returns a list of
  ``(group, old_gid, new_gid)`` for every change made.
  """
  host_groups = read_groups(host_group_path)
  changes = []

  for name in names:
    host_gid = find_gid(host_groups, name)
    if host_gid is None:
      logging.warning("Couldn't find %s group on the host", name)
      continue

    groups = read_groups(chroot_group_path)
    current_gid = find_gid(groups, name)
    if current_gid is None:
      logging.warning("Couldn't find %s group in the chroot", name)
      continue
    if current_gid == host_gid:
      continue

    with open(chroot_group_path, encoding='utf8') as infile:
      lines = infile.readlines()

    used = set(entry.gid for entry in groups)
    for entry in groups:
      if entry.gid == host_gid and entry.name != name:
        new_gid = unused_gid(used, host_gid)
        used.add(new_gid)
        logging.info("Moving %s GID from %d to %d...", entry.name, host_gid,
                     new_gid)
        lines = set_gid_lines(lines, entry.name, new_gid)
        changes.append((entry.name, host_gid, new_gid))

    logging.info("Changing %s GID from %d to %d...", name, current_gid,
                 host_gid)
    lines = set_gid_lines(lines, name, host_gid)
    changes.append((name, current_gid, host_gid))
    rewrite_file(chroot_group_path, lines)

  return changes
