"""
Enters an installed chroot for running alongside the host system.

By default, it will log into the primary user on the first chroot found.
You can specify a command and parameters to run instead of an interactive
shell.
"""

import argparse
import logging
import os
import subprocess
import sys

import crouton
from crouton import enter


def setup_parser():
  parser = argparse.ArgumentParser(
      prog='enter-chroot', description=__doc__,
      formatter_class=argparse.RawDescriptionHelpFormatter)
  parser.add_argument('--version', action='version', version=crouton.VERSION)
  parser.add_argument('-l', '--log-level', default='info',
                      choices=['debug', 'info', 'warning', 'error'],
                      help='Set the verbosity of messages')
  parser.add_argument('--config', help='Path to config file')
  parser.add_argument('--dump-config', action='store_true',
                      help='Dump default config and exit')

  # NOTE(josh): flags default to None rather than False so that we can tell
  # "not specified" apart from "specified" when merging with the config file.
  parser.add_argument('-b', dest='background', action='store_const',
                      const=True, default=None,
                      help=enter.VARDOCS['background'])
  parser.add_argument('-c', dest='chroots', metavar='CHROOTS',
                      help=enter.VARDOCS['chroots'])
  parser.add_argument('-k', dest='keyfile', metavar='KEYFILE',
                      help=enter.VARDOCS['keyfile'])
  parser.add_argument('-n', dest='name', metavar='NAME',
                      help=enter.VARDOCS['name'])
  parser.add_argument('-u', dest='user', metavar='USERNAME',
                      help=enter.VARDOCS['user'])
  parser.add_argument('-x', dest='nologin', action='store_const', const=True,
                      default=None, help=enter.VARDOCS['nologin'].strip())
  parser.add_argument('command', nargs=argparse.REMAINDER,
                      help='command [args...] to run inside the chroot')
  return parser


def main(argv=None):
  format_str = '%(levelname)-4s %(filename)s[%(lineno)-3s] : %(message)s'
  logging.basicConfig(level=logging.INFO,
                      format=format_str,
                      datefmt='%Y-%m-%d %H:%M:%S')

  parser = setup_parser()
  args = parser.parse_args(argv)

  logging.getLogger().setLevel(getattr(logging, args.log_level.upper()))
  # REMAINDER keeps the separator in `enter-chroot -- cmd`
  if args.command[:1] == ['--']:
    args.command = args.command[1:]

  if args.dump_config:
    crouton.dump_config(sys.stdout, enter.EnterConfig(), enter.VARDOCS)
    return 0

  config = enter.EnterConfig().as_dict()
  if args.config:
    crouton.load_config(args.config, config)
    crouton.warn_unknown_keys(config, enter.EnterConfig.get_field_names())

  for key, value in vars(args).items():
    # REMAINDER gives an empty list when no command is given
    if key == 'command' and not value:
      continue
    if value is not None and key in config:
      config[key] = value

  if os.geteuid() != 0:
    parser.error('{} must be run as root.'.format(parser.prog))

  if config['background'] and not config['command']:
    parser.error('A command must be specified in order to run in the '
                 'background.')

  crouton.install_signal_handlers()
  try:
    return enter.enter(enter.EnterConfig(**config))
  except (crouton.ChrootError, OSError, subprocess.SubprocessError) as ex:
    logging.error('%s', ex)
    return 1
  except KeyboardInterrupt:
    return 130


if __name__ == '__main__':
  sys.exit(main())
