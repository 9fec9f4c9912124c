"""
Enter an installed chroot.

The chroot's backing filesystem is attached by the external ``mount-chroot``
helper. This module then bind mounts the host's pseudo filesystems into it,
harmonizes hardware group ids, and starts a login shell or a command inside
it. Every mount is paired with a guard on a `CleanupStack` so that the
chroot is unwound in reverse order however the program exits.
"""

import logging
import os
import shutil
import signal
import subprocess
import sys
import termios

import crouton
from crouton import groups
from crouton import mounts
from crouton.mounts import fixabslinks

DEFAULT_CHROOTS = '/usr/local/chroots'
DEFAULT_BINDIR = '/usr/local/bin'
DEFAULT_USER = '1000'

HOST_GROUP_PATH = '/etc/group'
HOST_DOWNLOADS = '/home/chronos/user/Downloads'
HOST_MEDIA = '/media'
HOST_REMOVABLE = '/media/removable'
HOST_USR_BIN = '/usr/bin'
USR_BIN_WORKDIR = '/var/run/crouton'
SUSPEND_HELPER = 'powerd_suspend'

RESOLV_TARGET = '/var/host/shill/resolv.conf'
PREPARE_SCRIPT = '/prepare.sh'
DBUS_PIDFILE = '/var/run/dbus/pid'
DBUS_DAEMONS = ('/usr/bin/dbus-daemon', '/bin/dbus-daemon')

# (host source, chroot target, options, skip if the host lacks it)
BIND_MOUNTS = [
    ('/dev', '/dev', None, False),
    ('/dev/pts', '/dev/pts', None, False),
    ('/dev/shm', '/dev/shm', None, False),
    ('/sys', '/sys', None, False),
    ('/sys/fs/fuse/connections', '/sys/fs/fuse/connections', None, True),
    ('/tmp', '/tmp', 'exec', False),
    ('/proc', '/proc', None, False),
]

TMPFS_MOUNTS = [
    ('/var/run', 'noexec,nosuid,mode=0755,size=10%'),
    ('/var/run/lock', 'noexec,nosuid,nodev,size=5120k'),
]

# Host runtime state exposed to services inside the chroot
HOST_STATE_MOUNTS = [
    ('/var/run/dbus', '/var/host/dbus'),
    ('/var/run/shill', '/var/host/shill'),
]

# (link target, link path) created in the fresh /var/run
RUN_SYMLINKS = [
    ('/dev/shm', '/var/run/shm'),
    ('/dev/.udev', '/var/run/udev'),
]


class EnterConfig(crouton.ConfigObject):
  """
  Everything one invocation needs to know, including the bits of process
  environment it depends on, gathered once at startup.
  """

  def __init__(self,
               chroots=None,
               name=None,
               keyfile=None,
               user=None,
               background=False,
               nologin=False,
               command=None,
               bindir=None,
               auto_prepare=True,
               term=None,
               xauthority=None,
               no_unmount=None,
               **_):
    self.chroots = os.path.abspath(crouton.get_default(chroots,
                                                       DEFAULT_CHROOTS))
    self.name = name
    self.keyfile = keyfile
    self.user = str(crouton.get_default(user, DEFAULT_USER))
    self.background = bool(background)
    self.nologin = bool(nologin)
    self.command = list(crouton.get_default(command, []))
    self.bindir = crouton.get_default(bindir, DEFAULT_BINDIR)
    self.auto_prepare = bool(auto_prepare)
    self.term = crouton.get_default(term, os.environ.get('TERM'))
    self.xauthority = crouton.get_default(xauthority,
                                          os.environ.get('XAUTHORITY'))
    self.no_unmount = bool(crouton.get_default(
        no_unmount, os.environ.get('CROUTON_NO_UNMOUNT')))

  @property
  def mount_helper(self):
    return os.path.join(self.bindir, 'mount-chroot')

  @property
  def unmount_helper(self):
    return os.path.join(self.bindir, 'unmount-chroot')


VARDOCS = {
    "chroots": "Directory the chroots are in.",
    "name": "Name of the chroot to enter. Default: first one found in chroots",
    "keyfile": "Override the auto-detected encryption key location.",
    "user": "Username (or UID) to log into. Default: 1000 (the primary user)",
    "background":
    "Fork and run the command silently in the background.",
    "nologin":
    """
Don't log in, but directly execute the command instead. The environment
of the command will be empty (except for TERM).
""",
    "command": "Argument vector to run instead of an interactive shell.",
    "bindir":
    "Directory holding the mount-chroot and unmount-chroot helpers.",
    "auto_prepare":
    """
Run an unfinished chroot preparation script without asking when there is
no terminal to ask on.
""",
    "term": "TERM passed to the program in the chroot.",
    "xauthority":
    "X authorization file copied into chroots that ask for it.",
    "no_unmount":
    "Leave every mount in place on exit (used for nested invocations).",
}


def find_chroot(chroots):
  """
  Return the name of the first entry of ``chroots`` that looks like an
  initialized chroot.
  """
  try:
    names = sorted(os.listdir(chroots))
  except OSError:
    names = []

  for name in names:
    path = os.path.join(chroots, name)
    if (os.path.isdir(os.path.join(path, 'etc'))
        or os.path.isfile(os.path.join(path, '.ecryptfs'))):
      return name

  raise crouton.ChrootError('No chroots found in {}'.format(chroots))


def activate_chroot(config):
  """
  Have ``mount-chroot`` attach (and decrypt) the chroot and return the path
  it is mounted at.
  """
  cmd = [config.mount_helper]
  if config.keyfile:
    cmd += ['-k', config.keyfile]
  cmd += ['-p', '-c', config.chroots, '--', config.name]

  logging.debug("Calling %s", ' '.join(cmd))
  try:
    output = subprocess.check_output(cmd)
  except (OSError, subprocess.CalledProcessError) as ex:
    raise crouton.ChrootError(
        'Failed to mount chroot {}: {}'.format(config.name, ex))

  root = os.fsdecode(output).strip()
  if not root:
    raise crouton.ChrootError(
        'Failed to mount chroot {}. Your installation may be corrupted.'
        .format(config.name))
  return root


def unmount_chroot(config):
  subprocess.call([config.unmount_helper, '-y', '-c', config.chroots, '--',
                   config.name], stderr=subprocess.DEVNULL)


def is_first_run(chroot):
  """An unmounted /var/run means the chroot hasn't been started this boot."""
  return not chroot.mounter.mounted(chroot.path('/var/run'))


def prepare_filesystem(chroot):
  """
  Mount everything the chroot needs from the host, in order. Mounts that
  are already in place are skipped.
  """
  # Lift noexec/nosuid/nodev the outer mount may impose
  chroot.bind(chroot.root, '/', 'exec,suid,dev')

  for source, path, options, optional in BIND_MOUNTS:
    chroot.bind(source, path, options, optional=optional)

  for path, options in TMPFS_MOUNTS:
    chroot.tmpfs(path, path, options)

  for source, path in HOST_STATE_MOUNTS:
    chroot.bind(source, path, optional=True)

  for link_target, path in RUN_SYMLINKS:
    chroot.symlink(link_target, path)

  bind_media(chroot)


def bind_media(chroot, host_media=HOST_MEDIA, removable=HOST_REMOVABLE):
  """
  Recursively bind the host's removable media into a chroot that has a
  /media directory. The host side is made shared first so devices plugged
  in later show up in the chroot too.
  """
  if not os.path.isdir(chroot.path('/media')):
    return False
  if not os.path.isdir(removable):
    return False
  if chroot.mounter.mounted(chroot.path(removable)):
    return False

  if chroot.mounter.mounted(host_media):
    chroot.mounter.make_shared(host_media)
  return chroot.bind(removable, removable, recursive=True)


def bind_downloads(chroot, home, downloads=HOST_DOWNLOADS):
  if not home or not os.path.isdir(downloads):
    return False
  return chroot.bind(downloads, os.path.join(home, 'Downloads'), 'exec')


def patch_suspend_helper(text):
  """
  Turn the lines of the suspend helper that revoke USB persistence into
  no-ops. Chroots on external disks lose their root filesystem without it.
  Each line keeps its indentation and becomes ``true`` followed by the
  original as a comment, so enclosing loops and conditionals keep a body.
  """
  out = []
  for line in text.splitlines(True):
    statement = line.lstrip()
    if 'power/persist' in line and not statement.startswith('#'):
      indent = line[:len(line) - len(statement)]
      line = indent + 'true # ' + statement
    out.append(line)
  return ''.join(out)


def virtualize_usr_bin(mounter, usr_bin=HOST_USR_BIN, workdir=USR_BIN_WORKDIR,
                       helper=SUSPEND_HELPER):
  """
  Cover ``usr_bin`` with a writable tmpfs layer of symlinks back to the
  original, except for ``helper`` which is a patched copy. The layer stays
  in place for the rest of the boot session. Returns False if ``usr_bin``
  is already covered.
  """
  if mounter.mounted(usr_bin):
    return False

  orig = os.path.join(workdir, 'usr-bin.orig')
  layer = os.path.join(workdir, 'usr-bin')
  for need_dir in (orig, layer):
    if not os.path.isdir(need_dir):
      os.makedirs(need_dir)

  entries = sorted(os.listdir(usr_bin))
  if not mounter.mounted(orig):
    mounter.bind(usr_bin, orig)
  mounter.tmpfs('usr-bin', layer, 'nodev,mode=0755')

  for entry in entries:
    dest = os.path.join(layer, entry)
    if os.path.lexists(dest):
      os.remove(dest)
    if entry != helper:
      os.symlink(os.path.join(orig, entry), dest)
      continue

    logging.info("Patching %s to keep USB persistence on suspend", entry)
    source = os.path.join(usr_bin, entry)
    with open(source, encoding='utf8', errors='surrogateescape') as infile:
      text = infile.read()
    with open(dest, 'w', encoding='utf8', errors='surrogateescape') \
        as outfile:
      outfile.write(patch_suspend_helper(text))
    shutil.copymode(source, dest)

  mounter.bind(layer, usr_bin)
  return True


def confirm_prepare(auto=True, stdin=None, stderr=None):
  """
  Ask whether to finish the chroot setup. An empty answer means yes. Without
  a terminal to ask on, ``auto`` is the answer.
  """
  stdin = crouton.get_default(stdin, sys.stdin)
  stderr = crouton.get_default(stderr, sys.stderr)

  if not stdin.isatty():
    return auto

  stderr.write('Would you like to finish the setup? [Y/n] ')
  stderr.flush()
  response = stdin.readline().strip()
  return not response or response[0] in 'Yy'


def run_prepare(config, root, confirm=confirm_prepare):
  """
  Offer to run a leftover preparation script through a nested, non-login
  invocation of this tool that leaves the mounts in place.
  """
  script = fixabslinks(root, PREPARE_SCRIPT)
  if config.nologin or not os.path.isfile(script):
    return False

  logging.warning('A chroot preparation script still exists inside the '
                  'chroot. The chroot may not be fully set up.')
  if not confirm(auto=config.auto_prepare):
    return False

  logging.info('Preparing chroot environment...')
  cmd = [sys.executable, '-m', 'crouton', '-c', config.chroots,
         '-n', config.name]
  if config.keyfile:
    cmd += ['-k', config.keyfile]
  cmd += ['-x', 'sh', '-e', PREPARE_SCRIPT]

  env = dict(os.environ, CROUTON_NO_UNMOUNT='1')
  if subprocess.call(cmd, env=env) != 0:
    raise crouton.ChrootError('Preparation failed.')

  os.remove(script)
  logging.info('Setup completed. Starting chroot environment.')
  return True


def resolve_user(root, user, name):
  """Look ``user`` (a name or uid) up in the chroot's passwd database."""
  passwd = fixabslinks(root, '/etc/passwd')
  if not os.access(passwd, os.R_OK):
    raise crouton.ChrootError(
        "{} doesn't appear to be a valid chroot.".format(root))

  try:
    return groups.lookup_user(passwd, user)
  except KeyError:
    if str(user).isdigit():
      raise crouton.ChrootError('UID {} not found in {}'.format(user, name))
    raise crouton.ChrootError('User {} not found in {}'.format(user, name))


def fix_groups(root, host_group_path=HOST_GROUP_PATH):
  gfile = fixabslinks(root, '/etc/group')
  if not os.path.isfile(gfile) or not os.path.isfile(host_group_path):
    return []
  return groups.harmonize_gids(host_group_path, gfile)


def save_name(root, name):
  dirname = fixabslinks(root, '/etc/crouton')
  if not os.path.isdir(dirname):
    return
  with open(os.path.join(dirname, 'name'), 'w', encoding='utf8') as outfile:
    outfile.write(name + '\n')


def chroot_xauthority(root):
  """Return where the chroot wants the X authorization file, if anywhere."""
  envfile = fixabslinks(root, '/etc/environment')
  if not os.path.isfile(envfile):
    return None

  with open(envfile, encoding='utf8') as infile:
    for line in infile:
      line = line.strip()
      if line.startswith('XAUTHORITY='):
        return line.split('=', 1)[1].strip('\'"') or None
  return None


def copy_xauthority(root, xauthority):
  dest = chroot_xauthority(root)
  if not dest or not xauthority or not os.path.isfile(xauthority):
    return None

  dest = fixabslinks(root, dest)
  if os.path.lexists(dest):
    os.remove(dest)
  elif not os.path.isdir(os.path.dirname(dest)):
    os.makedirs(os.path.dirname(dest))
  shutil.copyfile(xauthority, dest)
  os.chmod(dest, 0o444)
  return dest


def link_resolv(root, target=RESOLV_TARGET):
  """Point the chroot's resolv.conf at the host's live copy."""
  etc = fixabslinks(root, '/etc')
  if not os.path.isdir(etc):
    return None

  path = os.path.join(etc, 'resolv.conf')
  tmp_path = path + '.crouton'
  if os.path.lexists(tmp_path):
    os.remove(tmp_path)
  os.symlink(target, tmp_path)
  os.replace(tmp_path, path)
  return path


class Jail(object):
  """
  Simple bind for subprocess preexec_fn: chroot into ``root``, change
  directory and drop to the given identity.
  """

  def __init__(self, root, uid=0, gid=0, gids=None, cwd=None, glibc=None):
    self.root = root
    self.uid = uid
    self.gid = gid
    self.gids = gids
    self.cwd = crouton.get_default(cwd, '/')
    if glibc is None:
      glibc = crouton.get_glibc()
    self.glibc = glibc

  def __call__(self):
    # The parent ignores these while waiting on us
    signal.signal(signal.SIGINT, signal.SIG_DFL)
    signal.signal(signal.SIGQUIT, signal.SIG_DFL)

    if self.glibc.chroot(os.fsencode(self.root)) != 0:
      crouton.raise_errno('Failed to chroot', self.root)

    try:
      os.chdir(self.cwd)
    except OSError:
      os.chdir('/')

    if self.gids is not None:
      os.setgroups(self.gids)

    # gid first, we can't change it once uid is dropped
    if self.glibc.setresgid(self.gid, self.gid, self.gid) != 0:
      crouton.raise_errno('Failed to set gid')
    if self.glibc.setresuid(self.uid, self.uid, self.uid) != 0:
      crouton.raise_errno('Failed to set uid')


def nologin_exec(command, term=None):
  """Run ``command`` as is, with nothing but TERM in its environment."""
  env = {}
  if term:
    env['TERM'] = term
  return crouton.Exec(argv=command or ['/bin/sh'], env=env)


def login_exec(user, command=None, term=None):
  """
  Run ``command`` (or the user's login shell) with the environment a login
  would give ``user``.
  """
  shell = user.shell or '/bin/sh'
  env = dict(HOME=user.home, USER=user.name, LOGNAME=user.name, SHELL=shell,
             PATH=crouton.DEFAULT_PATH)
  if term:
    env['TERM'] = term

  if command:
    return crouton.Exec(argv=command, env=env, cwd=user.home)
  # a leading dash makes the shell act as a login shell
  return crouton.Exec(argv=['-' + os.path.basename(shell)], exbin=shell,
                      env=env, cwd=user.home)


def run_as_root(root, argv, quiet=False):
  spec = crouton.Exec(argv=argv)
  kwargs = {}
  if quiet:
    kwargs = dict(stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL,
                  stderr=subprocess.DEVNULL)
  proc = spec.popen(preexec_fn=Jail(root), **kwargs)
  return crouton.exit_status(proc.wait())


def dbus_running(pidfile, proc='/proc'):
  """True if ``pidfile`` names a live dbus-daemon process."""
  try:
    with open(pidfile, encoding='utf8') as infile:
      pid = int(infile.read().strip())
    with open(os.path.join(proc, str(pid), 'cmdline'), 'rb') as infile:
      argv0 = infile.read().split(b'\0')[0]
  except (OSError, ValueError):
    return False
  return os.path.basename(argv0) == b'dbus-daemon'


def ensure_dbus(root, launch=run_as_root):
  """Start the chroot's system message bus unless it is already running."""
  daemon = None
  for path in DBUS_DAEMONS:
    if os.access(fixabslinks(root, path), os.X_OK):
      daemon = path
      break
  if daemon is None:
    return False

  pidfile = fixabslinks(root, DBUS_PIDFILE)
  if dbus_running(pidfile):
    logging.debug("dbus-daemon is already running in %s", root)
    return False
  if os.path.lexists(pidfile):
    os.remove(pidfile)
  if not os.path.isdir(os.path.dirname(pidfile)):
    os.makedirs(os.path.dirname(pidfile))

  status = launch(root, [daemon, '--system', '--fork'])
  if status != 0:
    logging.warning("dbus-daemon exited with status %d", status)
  return status == 0


def run_rc_local(root, launch=run_as_root):
  rc_local = fixabslinks(root, '/etc/rc.local')
  if not os.access(rc_local, os.X_OK):
    return None
  status = launch(root, ['/etc/rc.local'], quiet=True)
  if status != 0:
    logging.warning("/etc/rc.local exited with status %d", status)
  return status


def save_terminal(stream=None):
  """Return ``(fd, attributes)`` of the terminal on ``stream``, if any."""
  stream = crouton.get_default(stream, sys.stdin)
  try:
    fd = stream.fileno()
    if not os.isatty(fd):
      return None
    return fd, termios.tcgetattr(fd)
  except (AttributeError, OSError, ValueError, termios.error):
    return None


def restore_terminal(fd, attributes):
  termios.tcsetattr(fd, termios.TCSADRAIN, attributes)


def wait_foreground(proc):
  """
  Wait for ``proc``, leaving keyboard interrupts to it rather than tearing
  down the chroot underneath it.
  """
  previous = [(signum, signal.signal(signum, signal.SIG_IGN))
              for signum in (signal.SIGINT, signal.SIGQUIT)]
  try:
    return crouton.exit_status(proc.wait())
  finally:
    for signum, handler in previous:
      signal.signal(signum, handler)


def detach_stdio():
  """Start a new session with stdin and terminal output on /dev/null."""
  os.setsid()
  devnull = os.open(os.devnull, os.O_RDWR)
  os.dup2(devnull, 0)
  for fd in (1, 2):
    if os.isatty(fd):
      os.dup2(devnull, fd)
  if devnull > 2:
    os.close(devnull)


def launch_background(spec, jail, cleanup):
  """
  Fork. The parent gives up the cleanup stack and returns 0 immediately;
  the child runs the program and unwinds the stack when it finishes.
  """
  pid = os.fork()
  if pid:
    cleanup.pop_all()
    logging.debug("Started background job %d", pid)
    return 0

  status = 1
  try:
    detach_stdio()
    status = crouton.exit_status(spec.popen(preexec_fn=jail).wait())
  except Exception:  # pylint: disable=broad-except
    logging.exception("Background command failed")
  finally:
    cleanup.close()
    # NOTE(josh): sys.exit() would unwind the parent's frames in this child
    # and release the stack a second time.
    os._exit(status)  # pylint: disable=protected-access


def enter(config, mounter=None):
  """
  Enter the chroot described by ``config`` and run the requested program.
  Returns the program's exit status once every mount has been undone.
  """
  # pylint: disable=too-many-locals
  if mounter is None:
    mounter = mounts.Mounter()

  if not config.name:
    config.name = find_chroot(config.chroots)

  with mounts.CleanupStack() as cleanup:
    terminal = save_terminal()
    if terminal:
      cleanup.callback(restore_terminal, *terminal)

    root = activate_chroot(config)
    if not config.no_unmount:
      cleanup.callback(unmount_chroot, config)

    chroot = mounts.ChrootMounts(root, mounter, cleanup,
                                 track=not config.no_unmount)
    first_run = is_first_run(chroot)
    prepare_filesystem(chroot)

    if root.startswith(HOST_MEDIA + '/'):
      virtualize_usr_bin(mounter)

    run_prepare(config, root)

    user = None
    if not config.nologin:
      user = resolve_user(root, config.user, config.name)
      bind_downloads(chroot, user.home)

    fix_groups(root)
    save_name(root, config.name)
    copy_xauthority(root, config.xauthority)
    link_resolv(root)

    if config.nologin:
      spec = nologin_exec(config.command, config.term)
      jail = Jail(root, glibc=mounter.glibc)
    else:
      ensure_dbus(root)
      if first_run:
        run_rc_local(root)
      gfile = fixabslinks(root, '/etc/group')
      if os.path.isfile(gfile):
        gids = groups.supplementary_gids(gfile, user.name, user.gid)
      else:
        gids = [user.gid]
      spec = login_exec(user, config.command, config.term)
      jail = Jail(root, user.uid, user.gid, gids, cwd=spec.cwd,
                  glibc=mounter.glibc)

    if config.background:
      return launch_background(spec, jail, cleanup)
    return wait_foreground(spec.popen(preexec_fn=jail))
