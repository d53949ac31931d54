#!/usr/bin/python
"""Finds and kills processes left running inside a chroot.

A process is an orphan of a chroot when its */proc/PID/root* link
resolves to exactly that chroot directory.
"""

__copyright__ = "Copyright © 2012 Johan Lindh"
__license__ = "MIT"
__author__ = "Johan Lindh <johan@linkdata.se>"

import os, re, signal
import cli

PROC = '/proc'
LINE_MAX = 2048

_pid_rx = re.compile(r'[0-9]+$')

def default_writable_fn(command_text):
	return True

def candidates(chrootdir, proc=PROC):
	"""Yield the ids of processes whose root is _chrootdir_.
	Entries that vanish or cannot be read while scanning are skipped.
	"""
	target = os.fsencode(chrootdir)
	try:
		entries = list(os.scandir(proc))
	except OSError as err:
		raise cli.CommandLineError('opendir ({0!r}): {1}'.format(proc, err.strerror))
	for entry in entries:
		if not _pid_rx.match(entry.name):
			continue
		try:
			if not entry.is_dir(follow_symlinks=False):
				continue
			link = os.readlink(os.fsencode(os.path.join(entry.path, 'root')))
		except OSError:
			continue
		if link == target:
			yield int(entry.name)

def read_cmdline(pid, proc=PROC):
	path = os.path.join(proc, str(pid), 'cmdline')
	try:
		fd = os.open(path, os.O_RDONLY)
	except OSError as err:
		cli.warning('open ({0!r}): {1}'.format(path, err.strerror))
		return None
	data = None
	try:
		data = os.read(fd, LINE_MAX - 1)
	except OSError as err:
		cli.warning('read ({0!r}): {1}'.format(path, err.strerror))
	finally:
		try:
			os.close(fd)
		except OSError as err:
			cli.warning('close ({0!r}): {1}'.format(path, err.strerror))
	if data is None:
		return None
	return data.replace(b'\0', b' ').rstrip().decode('utf-8', 'replace')

def kill_orphan(pid, proc=PROC, writable=default_writable_fn):
	"""Send SIGKILL to _pid_. The process is not waited for, init
	reaps it.
	"""
	if pid == os.getpid():
		raise cli.CommandLineError('We as PID {0} should not be chrooted'.format(pid))
	if not writable('kill -9 {0}'.format(pid)):
		return False
	cmdline = read_cmdline(pid, proc)
	if cmdline is None:
		cmdline = '<error>'
	cli.warning('Killed -9 orphan PID {0}: {1}'.format(pid, cmdline))
	try:
		os.kill(pid, signal.SIGKILL)
	except OSError as err:
		# may already have exited
		cli.warning('kill ({0}, SIGKILL): {1}'.format(pid, err.strerror))
		return False
	return True

def reap(chrootdir, proc=PROC, writable=None):
	"""Kill every process rooted at _chrootdir_ and return their ids.
	"""
	writable = writable or default_writable_fn
	killed = []
	for pid in candidates(chrootdir, proc):
		kill_orphan(pid, proc, writable)
		killed.append(pid)
	return killed
