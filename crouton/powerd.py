"""
Keeps the host from suspending while the chroot is being used.

  croutonpowerd -i|--inhibit [command [args...]]
      Keep the host awake until command exits, or forever if no command is
      given.
  croutonpowerd -p|--poke|-deactivate [command [args...]]
      Report user activity once, then run command in place of this one.
  croutonpowerd --daemon
      Forward activity inside the chroot's X server to the host.

Installed as xscreensaver-command or gnome-screensaver-command, every
argument is passed through to the real program instead.
"""

import argparse
import logging
import os
import subprocess
import sys
import threading
import time

import crouton

POWER_MANAGER_DEST = 'org.chromium.PowerManager'
POWER_MANAGER_PATH = '/org/chromium/PowerManager'
USER_ACTIVITY_METHOD = 'org.chromium.PowerManager.HandleUserActivity'

# Seconds between checks on a running child while waiting for cancellation
CHILD_POLL_INTERVAL = 0.1


class PowerConfig(crouton.ConfigObject):
  """Tunables of the power shim."""

  def __init__(self,
               dbus_send=None,
               inhibit_interval=None,
               daemon_interval=None,
               idle_command=None,
               screensaver_command=None,
               passthrough=None,
               **_):
    self.dbus_send = crouton.get_default(dbus_send, 'dbus-send')
    self.inhibit_interval = crouton.get_default(inhibit_interval, 30)
    self.daemon_interval = crouton.get_default(daemon_interval, 2)
    self.idle_command = crouton.get_default(idle_command, ['xprintidle'])
    self.screensaver_command = crouton.get_default(
        screensaver_command, ['/usr/bin/xscreensaver-command', '-time'])
    self.passthrough = crouton.get_default(passthrough, {
        'xscreensaver-command': '/usr/bin/xscreensaver-command',
        'gnome-screensaver-command': '/usr/bin/gnome-screensaver-command',
    })


VARDOCS = {
    "dbus_send": "Program used to talk to the power manager.",
    "inhibit_interval":
    "Seconds between activity reports while inhibiting suspend.",
    "daemon_interval": "Seconds between idle time checks in daemon mode.",
    "idle_command":
    "Argument vector printing the X idle time in milliseconds.",
    "screensaver_command":
    """
Argument vector reporting the screensaver status. Output mentioning
"disabled" counts as user activity.
""",
    "passthrough":
    """
Maps the names this program may be installed under to the real program
that receives every argument unmodified.
""",
}


class PowerManager(object):
  """Reports user activity to the host's power manager over the system bus."""

  def __init__(self, dbus_send='dbus-send', clock=None):
    self.dbus_send = dbus_send
    self.clock = crouton.get_default(clock, time.monotonic)

  def command(self, ticks):
    return [self.dbus_send, '--system', '--type=method_call',
            '--dest=' + POWER_MANAGER_DEST, POWER_MANAGER_PATH,
            USER_ACTIVITY_METHOD, 'int64:{}'.format(ticks)]

  def poke(self):
    """Send one activity notification. Failures are logged, not raised."""
    ticks = int(self.clock() * 1000000)
    try:
      subprocess.check_call(self.command(ticks), stdout=subprocess.DEVNULL)
    except (OSError, subprocess.CalledProcessError) as ex:
      logging.debug("Failed to notify the power manager: %s", ex)
      return False
    return True


class Ticker(object):
  """
  Cancellable periodic wait. Each call to `wait` blocks for one interval and
  tells the caller whether to keep going.
  """

  def __init__(self, interval, cancel=None):
    self.interval = interval
    self.cancel = crouton.get_default(cancel, threading.Event())

  def stop(self):
    self.cancel.set()

  def wait(self, child=None):
    """
    Block for one interval. Returns False once the ticker is cancelled or
    ``child`` (a Popen) has exited, which ends the wait immediately.
    """
    if self.cancel.is_set():
      return False
    if child is None:
      return not self.cancel.wait(self.interval)

    deadline = time.monotonic() + self.interval
    while child.poll() is None:
      remaining = deadline - time.monotonic()
      if remaining <= 0:
        return True
      if self.cancel.wait(min(remaining, CHILD_POLL_INTERVAL)):
        return False
    return False


def inhibit(manager, command=None, ticker=None, interval=30):
  """
  Report activity every ``interval`` seconds for as long as ``command`` runs
  (forever without one). Returns the command's exit status.
  """
  ticker = crouton.get_default(ticker, Ticker(interval))
  child = None
  if command:
    child = subprocess.Popen(command)

  try:
    while True:
      manager.poke()
      if not ticker.wait(child):
        break
  finally:
    if child is not None and child.poll() is None:
      child.terminate()
      child.wait()

  if child is None:
    return 0
  return crouton.exit_status(child.returncode)


def command_output(cmd):
  try:
    output = subprocess.check_output(cmd, stderr=subprocess.DEVNULL)
  except (OSError, subprocess.CalledProcessError) as ex:
    logging.debug("%s failed: %s", cmd[0], ex)
    return None
  return output.decode('utf8', 'replace')


def read_idle(cmd):
  """Return the idle time in milliseconds printed by ``cmd``, or None."""
  output = command_output(cmd)
  try:
    return int(output.strip())
  except (AttributeError, ValueError):
    return None


def screensaver_disabled(cmd):
  output = command_output(cmd)
  return output is not None and 'disabled' in output.lower()


class IdleWatcher(object):
  """
  Forwards activity seen by the chroot's X server. Activity is an idle time
  that grew by less than one polling interval since the previous reading, or
  a disabled screensaver.
  """

  def __init__(self, manager, idle_source, disabled_source, interval=2):
    self.manager = manager
    self.idle_source = idle_source
    self.disabled_source = disabled_source
    self.interval = interval
    self.last_idle = 0

  def tick(self):
    """Take one reading. Returns True if activity was forwarded."""
    idle = self.idle_source()
    active = False
    if idle is not None:
      active = idle - self.last_idle < self.interval * 1000
      self.last_idle = idle

    if active or self.disabled_source():
      self.manager.poke()
      return True
    return False

  def run(self, ticker=None):
    ticker = crouton.get_default(ticker, Ticker(self.interval))
    while True:
      self.tick()
      if not ticker.wait():
        break


def passthrough(real, args):
  logging.debug("Passing through to %s", real)
  os.execv(real, [real] + list(args))


def setup_parser():
  parser = argparse.ArgumentParser(
      prog='croutonpowerd', description=__doc__,
      formatter_class=argparse.RawDescriptionHelpFormatter)
  parser.add_argument('--version', action='version', version=crouton.VERSION)
  parser.add_argument('-l', '--log-level', default='warning',
                      choices=['debug', 'info', 'warning', 'error'],
                      help='Set the verbosity of messages')
  parser.add_argument('--config', help='Path to config file')
  parser.add_argument('--dump-config', action='store_true',
                      help='Dump default config and exit')

  modes = parser.add_mutually_exclusive_group()
  modes.add_argument('-i', '--inhibit', dest='mode', action='store_const',
                     const='inhibit', help='inhibit suspend')
  modes.add_argument('-p', '--poke', '-deactivate', dest='mode',
                     action='store_const', const='poke',
                     help='report activity once')
  modes.add_argument('--daemon', dest='mode', action='store_const',
                     const='daemon', help='forward X activity')
  parser.add_argument('command', nargs=argparse.REMAINDER,
                      help='command [args...]')
  return parser


def main(argv=None, prog=None):
  format_str = '%(levelname)-4s %(filename)s[%(lineno)-3s] : %(message)s'
  logging.basicConfig(level=logging.WARNING,
                      format=format_str,
                      datefmt='%Y-%m-%d %H:%M:%S')

  if argv is None:
    argv = sys.argv[1:]
  if prog is None:
    prog = os.path.basename(sys.argv[0])

  defaults = PowerConfig()
  if prog in defaults.passthrough:
    passthrough(defaults.passthrough[prog], argv)
    return 1

  parser = setup_parser()
  args = parser.parse_args(argv)
  logging.getLogger().setLevel(getattr(logging, args.log_level.upper()))
  if args.command[:1] == ['--']:
    args.command = args.command[1:]

  if args.dump_config:
    crouton.dump_config(sys.stdout, defaults, VARDOCS)
    return 0

  config = defaults.as_dict()
  if args.config:
    crouton.load_config(args.config, config)
    crouton.warn_unknown_keys(config, PowerConfig.get_field_names())
  config = PowerConfig(**config)

  if args.mode is None:
    parser.error('one of -i, -p or --daemon is required')
  if args.mode == 'daemon' and args.command:
    parser.error('--daemon takes no command')

  manager = PowerManager(config.dbus_send)
  crouton.install_signal_handlers()
  try:
    if args.mode == 'poke':
      manager.poke()
      if args.command:
        os.execvp(args.command[0], args.command)
      return 0

    if args.mode == 'inhibit':
      return inhibit(manager, args.command,
                     interval=config.inhibit_interval)

    watcher = IdleWatcher(
        manager,
        lambda: read_idle(config.idle_command),
        lambda: screensaver_disabled(config.screensaver_command),
        config.daemon_interval)
    watcher.run()
    return 0
  except (OSError, subprocess.SubprocessError) as ex:
    logging.error('%s', ex)
    return 1
  except KeyboardInterrupt:
    return 130


if __name__ == '__main__':
  sys.exit(main())
