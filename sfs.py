#!/usr/bin/python
"""Safe filesystem checks.

Decides whether a path handed to the helper lies inside the allowed
root. Plain string tests run first and touch nothing on disk; the type
checks that follow use os.lstat(), so a symlink is never followed while
deciding.
"""

__copyright__ = "Copyright © 2012 Johan Lindh"
__license__ = "GPL"
__author__ = "Johan Lindh <johan@linkdata.se>"

import os, stat
import cli

class PathError(cli.CommandLineError):
	"""Raised when a path fails validation."""

class OutsideRoot(PathError):
	pass

class TraversalAttempt(PathError):
	pass

class TrailingSeparator(PathError):
	pass

class LookupFailed(PathError):
	pass

class IsSymlink(PathError):
	pass

class NotADirectory(PathError):
	pass

class NotARegularFile(PathError):
	pass

class Stat(object):
	"""A path and the os.lstat() data seen when it was validated.

	A Stat made by a containment check alone has no lstat data and
	a format of *none*.
	"""
	_st_attr = ('st_mode', 'st_ino', 'st_size')
	_st_fmtname = {
		0: 'none',
		stat.S_IFREG: 'file',
		stat.S_IFDIR: 'dir',
		stat.S_IFLNK: 'link',
		}
	__slots__ = ('path',) + _st_attr

	@classmethod
	def os_lstat(cls, path):
		try:
			return cls(path, os.lstat(path))
		except OSError as err:
			raise LookupFailed('{0}: {1}'.format(path, err.strerror))

	def __init__(self, path, st_data=None):
		self.path = path
		for key in self._st_attr:
			setattr(self, key, getattr(st_data, key, 0) if st_data else 0)

	def __bool__(self):
		return bool(self.st_ino or self.st_mode)

	def __str__(self):
		return self.path

	def fmt(self):
		return stat.S_IFMT(self.st_mode)
	def isdir(self):
		return self.fmt() == stat.S_IFDIR
	def isreg(self):
		return self.fmt() == stat.S_IFREG
	def islnk(self):
		return self.fmt() == stat.S_IFLNK
	def fmtstr(self):
		fmt = self.fmt()
		return self._st_fmtname.get(fmt, oct(fmt))

class Root(object):
	"""The allowed root: the only directory tree the helper may touch.

	Containment is a literal prefix comparison on the path as given.
	Paths are never canonicalized.
	"""
	__slots__ = ('_path',)

	def __init__(self, path):
		if not path or not os.path.isabs(path):
			raise ValueError('allowed root must be an absolute path: {0!r}'.format(path))
		self._path = path

	@property
	def path(self):
		return self._path

	def __str__(self):
		return self._path

	def prefixes(self, path):
		return path.startswith(self._path)

	def contained(self, path):
		"""Check that _path_ starts with the root, has no *..* and no
		trailing */*. Does not touch the filesystem.
		"""
		if not self.prefixes(path):
			raise OutsideRoot('{0}: not under allowed directory'.format(path))
		if '..' in path:
			raise TraversalAttempt("{0}: contains '..'".format(path))
		if path.endswith('/'):
			raise TrailingSeparator("{0}: ends with '/'".format(path))
		return Stat(path)

	def lstat(self, path, reqfmt):
		self.contained(path)
		st = Stat.os_lstat(path)
		if st.islnk():
			raise IsSymlink('{0}: symbolic link'.format(path))
		if st.fmt() != reqfmt:
			if reqfmt == stat.S_IFDIR:
				raise NotADirectory('{0}: not a directory'.format(path))
			raise NotARegularFile('{0}: not a regular file'.format(path))
		return st

	def directory(self, path):
		"""Check that _path_ is contained and is a real directory."""
		return self.lstat(path, stat.S_IFDIR)

	def regular(self, path):
		"""Check that _path_ is contained and is a real regular file."""
		return self.lstat(path, stat.S_IFREG)
