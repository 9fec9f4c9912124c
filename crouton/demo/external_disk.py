# Configuration for entering a chroot kept on an external disk. Use with
#   enter-chroot --config external_disk.py

# Directory the chroots are in.
chroots = "/media/removable/Storage/chroots"

# Name of the chroot to enter. Default: first one found in chroots
name = "precise"

# Username (or UID) to log into. Default: 1000 (the primary user)
user = "1000"

# Directory holding the mount-chroot and unmount-chroot helpers.
bindir = "/usr/local/bin"

# Run an unfinished chroot preparation script without asking when there is
# no terminal to ask on.
auto_prepare = False

# Argument vector to run instead of an interactive shell.
command = ["startxfce4"]
