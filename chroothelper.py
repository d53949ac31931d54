#!/usr/bin/python

__copyright__ = "Copyright © 2012 Johan Lindh"
__license__ = "MIT"
__author__ = "Johan Lindh <johan@linkdata.se>"

import os, sys, errno, grp
import cli, sfs, orphans

# Build-time settings. Nothing here may come from the caller's
# environment or from a file the caller can write.
ROOTSDIR = '/var/lib/mock'
CACHE_GROUP = 'mock'
PRELOAD_LIBRARY = 'libselinux-mock.so'
USE_SELINUX = True

BASE_ENV = ('PATH=/bin:/usr/bin:/usr/sbin', 'HOME=/root')
ALLOWED_ENV = (
	'dist',
	'ftp_proxy', 'http_proxy', 'https_proxy', 'no_proxy', 'PS1',
	)

class HelperError(cli.CommandLineError):
	pass

class ArgumentCountError(HelperError):
	pass

class UnrecognizedOption(HelperError):
	pass

class UnallowedMountType(UnrecognizedOption):
	pass

class MountNotAllowed(HelperError):
	pass

class UnrecognizedCommand(HelperError):
	pass

class ExecError(HelperError):
	pass

class NoMac(object):
	"""No mandatory access control on this host."""

	def enabled(self):
		return False

	def preload(self):
		return None

class SELinux(object):
	"""SELinux, considered active when selinuxfs is mounted.
	Processes started under it get a shim library preloaded.
	"""

	def __init__(self, library=PRELOAD_LIBRARY, mounts='/proc/mounts'):
		self.library = library
		self.mounts = mounts

	def enabled(self):
		try:
			with open(self.mounts, 'r') as procmounts:
				for line in procmounts:
					parts = line.split()
					if len(parts) > 2 and parts[2] == 'selinuxfs':
						return True
		except (IOError, OSError):
			return False
		return False

	def preload(self):
		return 'LD_PRELOAD=' + self.library

def mac_capability():
	return SELinux() if USE_SELINUX else NoMac()

class HelperConfig(object):
	"""Immutable settings for one helper process.
	"""
	__slots__ = ('_root', '_mac', '_allowed_env', '_cache_group')

	def __init__(self, rootsdir=ROOTSDIR, mac=None,
			allowed_env=ALLOWED_ENV, cache_group=CACHE_GROUP):
		self._root = sfs.Root(rootsdir)
		self._mac = mac_capability() if mac is None else mac
		self._allowed_env = tuple(allowed_env)
		self._cache_group = cache_group

	@property
	def root(self):
		"""The allowed root, see sfs.Root."""
		return self._root

	@property
	def rootsdir(self):
		return self._root.path

	@property
	def mac(self):
		return self._mac

	@property
	def allowed_env(self):
		"""Names of caller environment variables passed on to
		executed programs."""
		return self._allowed_env

	@property
	def cache_group(self):
		"""Group owning directories made by *pack*."""
		return self._cache_group

	def __str__(self):
		return '### {0!r} mac={1} env={2}'.format(
			self.rootsdir, type(self._mac).__name__,
			','.join(self._allowed_env))

def build_environment(cfg, mac_preload=False, environ=None):
	"""Return the environment for an executed program as a list
	of NAME=value strings. Only PATH, HOME, the MAC preload and the
	names in cfg.allowed_env can appear.
	"""
	environ = os.environ if environ is None else environ
	env = list(BASE_ENV)
	if mac_preload and cfg.mac.enabled():
		env.append(cfg.mac.preload())
	for name in cfg.allowed_env:
		value = environ.get(name)
		if value is not None:
			env.append(name + '=' + value)
	return env

def execute(program, args, environ):
	"""Replace this process with _program_. Does not return unless
	the exec fails, which raises ExecError.
	"""
	euid = os.geteuid()
	try:
		os.setreuid(euid, euid)
	except OSError as err:
		raise ExecError('setreuid {0}: {1}'.format(euid, err.strerror))
	sys.stdout.flush()
	sys.stderr.flush()
	try:
		os.execve(program, list(args),
			dict(e.split('=', 1) for e in environ))
	except OSError as err:
		raise ExecError('executing {0}: {1}'.format(program, err.strerror))

def shell_quote(text):
	return repr(text) if (' ' in text or not text) else text

class ChrootHelper(object):
	"""Perform privileged chroot maintenance for a build tool.

	Each command checks its arguments, and that every path it is
	given lies within the allowed root without *..*, a trailing */*
	or a symbolic link, then runs a fixed system program with a
	clean environment. If a check fails the helper prints an error
	and exits with status 1 without doing anything.
	"""

	def __init__(self, cfg=None, environ=None, program=None):
		self.cfg = cfg or HelperConfig()
		self.environ = os.environ if environ is None else environ
		self.program = program or cli.scriptname()
		self.verbose = False
		self.test = False
		self.help = False

	@property
	def root(self):
		return self.cfg.root

	def log(self, *args):
		if self.test or self.verbose:
			print('##', ' '.join((str(a) for a in args)), file=sys.stderr)

	def writable(self, cmd):
		if self.test:
			print(cmd, file=sys.stderr)
		elif self.verbose:
			print('#', cmd, file=sys.stderr)
		return not self.test

	@cli.direct('-v --verbose')
	def enable_verbose(self):
		"""Print each privileged action before performing it.
		"""
		self.verbose = True

	@cli.direct('-t --test')
	def enable_test(self):
		"""Test mode: check the arguments as usual, but only print
		the equivalent shell commands instead of running them.
		"""
		self.test = True

	@cli.direct('-h --help')
	def enable_help(self):
		"""Show help text and exit.
		"""
		self.help = True

	def request(self, name, args, need, text='not enough arguments'):
		argv = [self.program, name] + list(args)
		if len(argv) < need:
			raise ArgumentCountError(text)
		return argv

	def exec_command(self, program, args, mac_preload=False):
		environ = build_environment(self.cfg, mac_preload, self.environ)
		cmd = 'env -i ' + ' '.join(shell_quote(e) for e in environ) + \
			' ' + program + ' ' + ' '.join(shell_quote(a) for a in args[1:])
		if self.writable(cmd):
			execute(program, args, environ)

	def chdir(self, path):
		if self.writable('cd {0!r}'.format(path)):
			try:
				os.chdir(path)
			except OSError as err:
				raise HelperError('could not change dir to {0}: {1}'.format(
					path, err.strerror))

	def make_cache_dir(self, path):
		if self.writable('mkdir -m 0750 {0!r}'.format(path)):
			try:
				os.mkdir(path, 0o750)
			except OSError as err:
				if err.errno != errno.EEXIST:
					raise HelperError('mkdir {0}: {1}'.format(path, err.strerror))
		try:
			group = grp.getgrnam(self.cfg.cache_group)
		except KeyError:
			self.log('no group', repr(self.cfg.cache_group))
			return
		if self.writable('chown 0:{0} {1!r}'.format(group.gr_gid, path)):
			self.root.directory(path)
			try:
				os.lchown(path, 0, group.gr_gid)
			except OSError as err:
				raise HelperError('chown {0}: {1}'.format(path, err.strerror))

	@staticmethod
	def tar_mode(archive, mode):
		if archive.endswith('.bz2'):
			return '-j' + mode
		if archive.endswith('.gz'):
			return '-z' + mode
		return '-' + mode

	@cli.final
	@cli.queued('chroot')
	@cli.argtext('args', '_dir_ [_command_ [_args_ ...]]')
	def chroot(self, *args):
		"""Run _command_ with _dir_ as the root directory.
		_dir_ must be a directory within the allowed root.
		"""
		argv = self.request('chroot', args, 3, 'no directory given for chroot')
		self.root.directory(argv[2])
		self.exec_command('/usr/sbin/chroot', argv[1:])

	_mount_types = {
		('-t', 'proc'): 5,
		('-t', 'devpts'): 5,
		('--bind', '/dev'): 4,
		}

	@cli.final
	@cli.queued('mount')
	@cli.argtext('args', '*-t proc proc* _dir_ | *-t devpts devpts* _dir_ | *--bind /dev* _dir_')
	def mount(self, *args):
		"""Mount *proc* or *devpts*, or bind mount */dev*, on _dir_.
		_dir_ must start with the allowed root.
		"""
		argv = self.request('mount', args, 5)
		target = self._mount_types.get(tuple(argv[2:4]))
		if target is None:
			raise UnallowedMountType('unallowed mount type')
		fstype = argv[3] if argv[2] == '-t' else 'bind'
		if len(argv) <= target:
			raise ArgumentCountError('{0}: not enough mount arguments'.format(fstype))
		if not self.root.prefixes(argv[target]):
			raise MountNotAllowed('{0}: mount not allowed on {1}'.format(
				fstype, argv[target]))
		self.exec_command('/bin/mount', argv[1:])

	@cli.final
	@cli.queued('umount')
	@cli.argtext('args', '_dir_')
	def umount(self, *args):
		"""Unmount _dir_, a directory within the allowed root.
		"""
		argv = self.request('umount', args, 3)
		self.root.directory(argv[2])
		self.exec_command('/bin/umount', argv[1:], mac_preload=True)

	@cli.final
	@cli.queued('rm')
	@cli.argtext('args', '*-rf* _dir_')
	def rm(self, *args):
		"""Recursively remove _dir_, a directory within the allowed root.
		"""
		argv = self.request('rm', args, 4)
		if argv[2] != '-rf':
			raise UnrecognizedOption('{0}: options not allowed'.format(argv[2]))
		self.root.directory(argv[3])
		self.exec_command('/bin/rm', argv[1:])

	@cli.final
	@cli.queued('rpm')
	@cli.argtext('args', '*--root* _dir_ [_args_ ...]')
	def rpm(self, *args):
		"""Run *rpm* on the chroot _dir_.
		"""
		argv = self.request('rpm', args, 4)
		if argv[2] != '--root':
			raise UnrecognizedOption('{0}: options not allowed'.format(argv[2]))
		self.root.directory(argv[3])
		self.exec_command('/bin/rpm', argv[1:])

	@cli.final
	@cli.queued('yum')
	@cli.argtext('args', '*--installroot* _dir_ [_args_ ...]')
	def yum(self, *args):
		"""Run the yum wrapper on the chroot _dir_.
		"""
		argv = self.request('yum', args, 4)
		if argv[2] != '--installroot':
			raise UnrecognizedOption('{0}: options not allowed'.format(argv[2]))
		self.root.directory(argv[3])
		self.exec_command('/usr/libexec/mock-yum', argv[1:], mac_preload=True)

	@cli.final
	@cli.queued('mknod')
	@cli.argtext('args', '_path_ *-m* _mode_ _type_ _major_ _minor_')
	def mknod(self, *args):
		"""Create the device node _path_ within the allowed root.
		_path_ need not exist. The node type and numbers are left to
		*mknod* to check.
		"""
		argv = self.request('mknod', args, 8)
		self.root.contained(argv[2])
		if argv[3] != '-m':
			raise UnrecognizedOption('{0}: options not allowed'.format(argv[3]))
		self.exec_command('/bin/mknod', argv[1:])

	@cli.final
	@cli.queued('unpack')
	@cli.argtext('args', '_dir_ _archive_')
	def unpack(self, *args):
		"""Extract _archive_ into _dir_, keeping ownership.
		Compression is chosen by the *.bz2* or *.gz* suffix.
		"""
		argv = self.request('unpack', args, 4)
		dststat = self.root.directory(argv[2])
		self.chdir(dststat.path)
		self.exec_command('/bin/tar', [
			'tar', '--same-owner', self.tar_mode(argv[3], 'xpf'), argv[3]])

	@cli.final
	@cli.queued('pack')
	@cli.argtext('args', '_dir_ _archive_ _path_')
	def pack(self, *args):
		"""Archive _path_, relative to _dir_, into _archive_ without
		crossing filesystems. The directory holding _archive_ is
		created with mode 0750 and given to the cache group.
		"""
		argv = self.request('pack', args, 5)
		srcstat = self.root.directory(argv[2])
		self.chdir(srcstat.path)
		cache_dir = os.path.dirname(argv[3])
		self.root.contained(cache_dir)
		self.make_cache_dir(cache_dir)
		self.exec_command('/bin/tar', [
			'tar', '--one-file-system', self.tar_mode(argv[3], 'cf'),
			argv[3], argv[4]])

	@cli.final
	@cli.queued('chown')
	@cli.argtext('args', '_owner_ _path_ [_path_ ...]')
	def chown(self, *args):
		"""Change the owner of each _path_ within the allowed root.
		"""
		argv = self.request('chown', args, 4)
		for path in argv[3:]:
			self.root.contained(path)
		self.exec_command('/bin/chown', argv[1:], mac_preload=True)

	@cli.final
	@cli.queued('chmod')
	@cli.argtext('args', '_mode_ _path_ [_path_ ...]')
	def chmod(self, *args):
		"""Change the permissions of each _path_ within the allowed root.
		"""
		argv = self.request('chmod', args, 4)
		for path in argv[3:]:
			self.root.contained(path)
		self.exec_command('/bin/chmod', argv[1:], mac_preload=True)

	@cli.final
	@cli.queued('orphanskill orphankill')
	@cli.argtext('args', '_dir_')
	def orphanskill(self, *args):
		"""Kill every process whose root directory is _dir_.
		"""
		argv = self.request('orphanskill', args, 3, 'no directory given for chroot')
		chrootstat = self.root.directory(argv[2])
		killed = orphans.reap(chrootstat.path, writable=self.writable)
		self.log('killed', len(killed), 'orphans in', repr(chrootstat.path))

	def parse(self, cmd_list):
		try:
			cli_list = cli.parse(self, cmd_list)
		except cli.ArgumentUnexpectedError as err:
			raise UnrecognizedCommand('command ' + str(err))
		if self.help or not cli_list:
			print(cli.Usage(self, self.program), file=sys.stderr)
			return 0 if self.help else 1

		self.log(self.cfg)

		for cmd in cli_list:
			self.log(cmd.text)
			cmd()
		return 0

def main(argv=None, cfg=None):
	argv = sys.argv if argv is None else argv
	program = os.path.basename(argv[0]) if argv else 'chroot-helper'
	try:
		helper = ChrootHelper(cfg, program=program)
		return helper.parse(argv[1:])
	except (cli.CommandLineError, OSError) as err:
		cli.error(err.strerror or str(err), program)
		return 1

if __name__ == '__main__':
	sys.exit(main())
