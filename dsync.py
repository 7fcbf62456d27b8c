# Copyright (c) 2025 Joe Walter
# GNU General Public License v3.0

import sys
import argparse
import os
import re
import stat
import logging
import multiprocessing
import multiprocessing.connection
import tempfile
import time
import traceback
from pathlib import Path
from direntry_walk import direntry_walk

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

PROG = "dsync"
CHUNK_SIZE = 64 * 1024
MIN_RUNNING_PROC = 2

if "fork" in multiprocessing.get_all_start_methods():
	_mp_context = multiprocessing.get_context("fork")
else:
	_mp_context = multiprocessing.get_context("spawn")

class SyncError(Exception):
	'''Base class for all errors raised by this module. `path` is the offending file or directory, if any.'''

	def __init__(self, message:str, path:str | os.PathLike[str] | None = None):
		super().__init__(message)
		self.message = message
		self.path    = path

class ArgumentError(SyncError):
	'''Bad argument count or value.'''

class PathError(SyncError):
	'''`src` or `dst` is unusable as a sync root.'''

class ListError(SyncError):
	'''A sync root could not be opened or read.'''

class CopyError(SyncError):
	'''Base class for errors local to one copy task.'''

	bytes_written = 0

class SourceOpenError(CopyError):
	pass

class DestExistsError(CopyError):
	pass

class DestCreateError(CopyError):
	pass

class ModeError(CopyError):
	pass

class ReadError(CopyError):
	def __init__(self, message:str, path:str | os.PathLike[str] | None = None, bytes_written:int = 0):
		super().__init__(message, path)
		self.bytes_written = bytes_written

class WriteError(CopyError):
	def __init__(self, message:str, path:str | os.PathLike[str] | None = None, bytes_written:int = 0):
		super().__init__(message, path)
		self.bytes_written = bytes_written

class _DebugInfoFilter(logging.Filter):
	'''Logging filter that only allows DEBUG and INFO records to pass.'''

	def filter(self, record):
		return logging.DEBUG <= record.levelno <= logging.INFO

class _ArgumentParser(argparse.ArgumentParser):
	'''`ArgumentParser` that raises `ArgumentError` instead of exiting with status 2.'''

	def error(self, message):
		raise ArgumentError(message)

class _ArgParser:
	'''Argument parser for when this python file is run with arguments instead of an imported module.'''

	parser = _ArgumentParser(
		prog=PROG,
		description="Copy every regular file in one directory that is missing (by name) from another directory, using up to `max_procs` copy processes at once. Subdirectories are not searched and existing files are never overwritten.",
		epilog="(c) 2025 Joe Walter"
	)

	parser.add_argument("src_root", help="The directory to copy files from.")
	parser.add_argument("dst_root", help="The directory to copy files to.")
	parser.add_argument("max_procs", help=f"The maximum number of copy processes running at once. Must be an integer of at least {MIN_RUNNING_PROC}.")

	parser.add_argument("-d", "--dry-run", action="store_true", default=False, help="List the files that would be copied without copying them.")
	parser.add_argument("--log", metavar="path", nargs="?", type=str, default=None, const="auto", help="The path of the log file to use. It will be created and must not already exist. With \"auto\" or no argument, a tempfile will be used for the log, and it will be moved to the user's home directory after the sync is done. If this flag is absent, then no logging will be performed.")
	parser.add_argument("--debug", action="store_true", default=False, help="Log debug messages.")
	parser.add_argument("-q", action="count", default=0, help="Forgo printing to stdout (-q) and stderr (-qq).")

	@staticmethod
	def parse(args:list[str]) -> argparse.Namespace:
		parsed_args = _ArgParser.parser.parse_args(args)
		parsed_args.quiet     = parsed_args.q >= 1
		parsed_args.veryquiet = parsed_args.q >= 2
		del parsed_args.q
		return parsed_args

class _NameSet:
	'''
	Basenames of the files in a directory snapshot. Comparison is exact and case-sensitive.

	>>> names = _NameSet([Path("/x/a.txt"), Path("/x/B.txt")])
	>>> "a.txt" in names, "b.txt" in names, len(names)
	(True, False, 2)
	'''

	def __init__(self, files:list[Path]):
		self._names = frozenset(f.name for f in files)

	def __contains__(self, name:str) -> bool:
		return name in self._names

	def __len__(self) -> int:
		return len(self._names)

class _WorkerPool:
	'''
	Runs each submitted task in its own process, with at most `limit` processes alive at a time.

	Finished processes are reaped whenever the pool is full and on `drain()`. Task outcomes are not collected.
	'''

	def __init__(self, limit:int, *, module:str = PROG):
		if limit < 1:
			raise ValueError(f"limit must be positive: {limit}")
		self.limit     = limit
		self.module    = module
		self.peak      = 0
		self.submitted = 0
		self._procs : list[multiprocessing.process.BaseProcess] = []

	@property
	def in_flight(self) -> int:
		return len(self._procs)

	def submit(self, target, *args) -> None:
		'''Start `target(*args)` in a new process, first blocking until a slot is free if the pool is full.'''

		while len(self._procs) >= self.limit:
			self._wait()

		proc = _mp_context.Process(target=target, args=args)
		try:
			proc.start()
		except OSError as e:
			logger.error(_error_line(self.module, e))
			return
		self._procs.append(proc)
		self.submitted += 1
		self.peak = max(self.peak, len(self._procs))
		logger.debug(f"started pid {proc.pid} ({len(self._procs)}/{self.limit} running)")

	def drain(self) -> None:
		'''Block until every submitted task has finished.'''

		while self._procs:
			self._wait()

	def _wait(self) -> None:
		multiprocessing.connection.wait([p.sentinel for p in self._procs])
		running = []
		for proc in self._procs:
			if proc.is_alive():
				running.append(proc)
			else:
				proc.join()
				logger.debug(f"reaped pid {proc.pid} (exit code {proc.exitcode})")
				proc.close()
		self._procs = running

class Results:
	'''Various statistics and other information returned by `sync()`.'''

	def __init__(self) -> None:
		self.log_file   : Path | None = None

		self.success    : bool        = False
		self.errors     : list[str]   = []

		self.dispatched     = 0
		self.skipped        = 0
		self.peak_in_flight = 0

def sync_cmd(args:list[str], *, module:str = PROG) -> Results:
	'''Run `sync()` with command line arguments.'''

	try:
		parsed_args = _ArgParser.parse(args)
	except ArgumentError as e:
		results = Results()
		msg = _error_line(module, e)
		results.errors.append(msg)
		print(msg, file=sys.stderr)
		print(_ArgParser.parser.format_usage(), end="", file=sys.stderr)
		return results

	return sync(
		parsed_args.src_root,
		parsed_args.dst_root,
		parsed_args.max_procs,
		dry_run   = parsed_args.dry_run,
		log       = parsed_args.log,
		debug     = parsed_args.debug,
		quiet     = parsed_args.quiet,
		veryquiet = parsed_args.veryquiet,
		module    = module,
	)

def sync(
		src       : str | os.PathLike[str],
		dst       : str | os.PathLike[str],
		max_procs : int | str,
		*,
		dry_run   : bool = False,
		log       : str | os.PathLike[str] | None = None,
		debug     : bool = False,
		quiet     : bool = False,
		veryquiet : bool = False,
		module    : str  = PROG,
	) -> Results:
	'''
	Copies every regular file directly inside `src` whose name does not appear in `dst` into `dst`. Each copy runs in its own process, and no more than `max_procs` copy processes run at once. Subdirectories are not searched, and files already in `dst` are never read or modified, even if their content differs.

	Both directories are listed once, before any copying starts. If a file appears in `dst` after that, the copy that would overwrite it fails instead. Individual copy failures are printed by the process that hit them but do not make the run unsuccessful.

	Args
		src (str or PathLike)    : The directory to copy files from. Can be a symlink to a directory.
		dst (str or PathLike)    : The directory to copy files to. Can be a symlink to a directory. Must not be the same directory as `src`.
		max_procs (int or str)   : The maximum number of copy processes running at once. Must be at least 2. A string is parsed as a base 10 integer.

		dry_run (bool)           : Whether to only list the files that would be copied. (Defaults to `False`.)
		log (str or PathLike)    : The path of the log file to use. It must not already exist. A value of "auto" means a tempfile will be used for the log, and it will be moved to the user's home directory after the sync is done. A value of `None` will skip logging to a file. (Defaults to `None`.)
		debug (bool)             : Whether to log debug messages. (Default to `False`.)
		quiet (bool)             : Whether to forgo printing to stdout.
		veryquiet (bool)         : Whether to forgo printing to stdout and stderr.
		module (str)             : The label that starts every error line. (Defaults to "dsync".)

	Example Console Output
		   path/to/src
		-> path/to/dst
		--------------
		pid: 4242; source: /path/to/src/a.txt; bytes copied: 1021
		pid: 4243; source: /path/to/src/b.bin; bytes copied: 77004
		dsync: File exists /path/to/dst/c.txt

		*** dsync finished successfully. ***

		Summary
		-------
		Dispatched: 3
		Skipped: 12

	Returns
		A `Results` object. `Results.success` is `True` when the arguments were valid, both directories could be listed and every copy process was started and waited for.
	'''
	results = Results()

	if logger.handlers:
		for handler in list(logger.handlers):
			logger.removeHandler(handler)

	log_file     = None
	tmp_log_file = None
	handler_file = None

	if veryquiet:
		quiet = True

	handler_stdout, handler_stderr = _add_console_handlers(debug=debug, quiet=quiet, veryquiet=veryquiet)

	try:
		if not isinstance(src, (str, os.PathLike)):
			msg = f"Bad type for arg 'src' (expected str or PathLike): {src}"
			raise TypeError(msg)
		if not isinstance(dst, (str, os.PathLike)):
			msg = f"Bad type for arg 'dst' (expected str or PathLike): {dst}"
			raise TypeError(msg)
		if isinstance(max_procs, bool) or not isinstance(max_procs, (int, str)):
			msg = f"Bad type for arg 'max_procs' (expected int or str): {max_procs}"
			raise TypeError(msg)
		if not isinstance(dry_run, bool):
			msg = f"Bad type for arg 'dry_run' (expected bool): {dry_run}"
			raise TypeError(msg)
		if log is not None and not isinstance(log, (str, os.PathLike)):
			msg = f"Bad type for arg 'log' (expected str or PathLike): {log}"
			raise TypeError(msg)
		if not isinstance(quiet, bool):
			msg = f"Bad type for arg 'quiet' (expected bool): {quiet}"
			raise TypeError(msg)
		if not isinstance(veryquiet, bool):
			msg = f"Bad type for arg 'veryquiet' (expected bool): {veryquiet}"
			raise TypeError(msg)

		src_root = Path(src)
		dst_root = Path(dst)

		if not src_root.is_dir():
			raise PathError("Not a directory", src_root)
		if not dst_root.is_dir():
			raise PathError("Not a directory", dst_root)
		if src_root.resolve() == dst_root.resolve():
			raise PathError("Can not sync directory with itself")
		limit = _parse_limit(max_procs)

		timestamp = str(int(time.time()*1000))
		if log is None:
			log_file = None
		elif log == "auto":
			log_file = Path.home() / f"dsync.{timestamp}.log"
		else:
			log_file = Path(log)
		results.log_file = log_file

		if log_file is not None and os.path.exists(log_file):
			raise PathError("Chosen log already exists", log_file)

		if log_file is not None:
			with tempfile.NamedTemporaryFile(mode="w+", encoding="utf-8", delete=False) as tmp_log:
				tmp_log_file = Path(tmp_log.name)
			formatter = logging.Formatter("%(levelname)s: %(message)s")
			handler_file = logging.FileHandler(tmp_log_file, encoding="utf-8")
			handler_file.setFormatter(formatter)
			if debug:
				handler_file.setLevel(logging.DEBUG)
			else:
				handler_file.setLevel(logging.INFO)
			logger.addHandler(handler_file)

		logger.debug(f"Starting sync: {src_root=} {dst_root=} {limit=} {dry_run=} {log_file=} {debug=} {quiet=} {veryquiet=}")

		width = max(len(str(src_root)), len(str(dst_root))) + 3
		logger.info("   " + str(src_root))
		logger.info("-> " + str(dst_root))
		logger.info("-" * width)

		src_files = _list_files(src_root)
		dst_names = _NameSet(_list_files(dst_root))
		logger.debug(f"{len(src_files)} files in src, {len(dst_names)} files in dst")

		pool = _WorkerPool(limit, module=module)
		try:
			for src_file in src_files:
				if src_file.name in dst_names:
					results.skipped += 1
					logger.debug(f"= {src_file.name}")
					continue
				if dry_run:
					results.dispatched += 1
					logger.info(f"+ {src_file.name}")
					continue
				logger.debug(f"+ {src_file.name}")
				pool.submit(_copy_task, src_file, dst_root, module, quiet, veryquiet)
				results.dispatched = pool.submitted
		finally:
			pool.drain()
			results.peak_in_flight = pool.peak

		logger.info("")
		logger.info(f"*** {module} finished successfully. ***")

		results.success = True

	except KeyboardInterrupt:
		logger.critical("Cancelled by user.")
	except SyncError as e:
		msg = _error_line(module, e)
		logger.critical(msg)
		results.errors.append(msg)
	except (TypeError, ValueError) as e:
		msg = f"Input Error: {e}"
		logger.critical(msg)
		results.errors.append(msg)
	except Exception as e:
		logger.critical("Unexpected error: " + _error_line(module, e))
		logger.critical(traceback.format_exc())

	finally:
		if results.success:
			logger.info("")
			if dry_run:
				logger.info("*** DRY RUN ***")
			logger.info("Summary")
			logger.info("-------")
			logger.info(f"Dispatched: {results.dispatched}")
			logger.info(f"Skipped: {results.skipped}")

		if log_file and tmp_log_file:
			logger.info("")
			logger.info(f"Log file: {log_file}")

		if handler_stdout:
			logger.removeHandler(handler_stdout)

		if handler_stderr:
			logger.removeHandler(handler_stderr)

		if handler_file:
			logger.removeHandler(handler_file)
			handler_file.close()
			assert tmp_log_file is not None
			assert log_file is not None
			tmp_log_file.replace(log_file)

	return results

def _add_console_handlers(*, debug:bool = False, quiet:bool = False, veryquiet:bool = False):
	'''Attach the stdout (DEBUG/INFO) and stderr (WARNING and up) handlers to the module logger. Returns both handlers, `None` for any that was skipped.'''

	handler_stdout = None
	handler_stderr = None

	if not quiet:
		handler_stdout = logging.StreamHandler(sys.stdout)
		handler_stdout.setFormatter(logging.Formatter("%(message)s"))
		handler_stdout.addFilter(_DebugInfoFilter())
		if debug:
			handler_stdout.setLevel(logging.DEBUG)
		else:
			handler_stdout.setLevel(logging.INFO)
		logger.addHandler(handler_stdout)

	if not veryquiet:
		handler_stderr = logging.StreamHandler(sys.stderr)
		handler_stderr.setFormatter(logging.Formatter("%(message)s"))
		handler_stderr.setLevel(logging.WARNING)
		logger.addHandler(handler_stderr)

	return handler_stdout, handler_stderr

def _parse_limit(value:int | str) -> int:
	'''
	Validates the maximum number of copy processes.

	>>> _parse_limit("4")
	4
	>>> _parse_limit(1)
	Traceback (most recent call last):
	...
	dsync.ArgumentError: Maximum of running processes must be greater or equal to 2
	>>> _parse_limit("1_0")
	Traceback (most recent call last):
	...
	dsync.ArgumentError: Maximum of running processes is not an integer
	'''

	if isinstance(value, str):
		# ASCII digits only, no underscores or padding
		if not re.fullmatch(r"-?[0-9]+", value):
			raise ArgumentError("Maximum of running processes is not an integer")
		value = int(value, 10)
	if value < MIN_RUNNING_PROC:
		raise ArgumentError(f"Maximum of running processes must be greater or equal to {MIN_RUNNING_PROC}")
	return value

def _list_files(root:Path) -> list[Path]:
	'''
	Lists the regular files directly inside `root`, in the order the file system returns them. Symlinks are followed, so a link to a regular file is included but a link to a directory or a broken link is not. Subdirectories are not searched.

	Raises `ListError` if `root` cannot be opened or read.
	'''

	root = root.absolute()
	logger.debug(f"scanning: {root}")

	files = []
	try:
		for _, _, file_entries in direntry_walk(root):
			for entry in file_entries:
				try:
					is_file = entry.is_file()
				except OSError as e:
					logger.warning(f"Skipping unreadable entry: {e.strerror} {root / entry.name}")
					continue
				if is_file:
					files.append(root / entry.name)
			# top level only
			break
		else:
			# the walk yields nothing at all for a directory it can't open
			raise ListError("Can not read directory", root)
	except OSError as e:
		raise ListError(e.strerror or str(e), root) from e
	return files

def _creation_mode(path:Path) -> int:
	'''Returns the permission bits of `path` (following symlinks), to be used for its copy.'''

	try:
		return stat.S_IMODE(os.stat(path).st_mode)
	except OSError as e:
		raise ModeError(e.strerror or str(e), path) from e

def _copy(src:Path, dst_dir:Path, *, mode:int = 0o666, module:str = PROG) -> int:
	'''
	Copies `src` into `dst_dir` under the same name and returns the number of bytes written. The new file is given the permission bits `mode`.

	The destination is created exclusively, so an existing file is never overwritten; `DestExistsError` is raised instead. If reading or writing fails partway, `ReadError` or `WriteError` is raised and the partial copy is left in place.
	'''

	try:
		src_fd = os.open(src, os.O_RDONLY)
	except OSError as e:
		raise SourceOpenError(e.strerror or str(e), src) from e

	dst = Path(os.path.realpath(dst_dir)) / src.name

	try:
		dst_fd = os.open(dst, os.O_CREAT | os.O_WRONLY | os.O_EXCL, mode)
	except OSError as e:
		_close(src_fd, src, module)
		if isinstance(e, FileExistsError):
			raise DestExistsError(e.strerror or str(e), dst) from e
		raise DestCreateError(e.strerror or str(e), dst) from e

	written = 0
	error : CopyError | None = None
	try:
		os.fchmod(dst_fd, mode)
	except OSError as e:
		logger.warning(_error_line(module, e))

	while error is None:
		try:
			buf = os.read(src_fd, CHUNK_SIZE)
		except InterruptedError:
			continue
		except OSError as e:
			error = ReadError(e.strerror or str(e), src, written)
			break
		if not buf:
			break

		view = memoryview(buf)
		while view:
			try:
				n = os.write(dst_fd, view)
			except InterruptedError:
				continue
			except OSError as e:
				error = WriteError(e.strerror or str(e), dst, written)
				break
			view = view[n:]
			written += n

	_close(src_fd, src, module)
	_close(dst_fd, dst, module)

	if error is not None:
		error.bytes_written = written
		raise error
	return written

def _close(fd:int, path:Path, module:str) -> None:
	'''Close a file descriptor. Failures are only logged.'''

	try:
		os.close(fd)
	except OSError as e:
		logger.warning(_error_line(module, SyncError(e.strerror or str(e), path)))

def _copy_task(src:Path, dst_dir:Path, module:str = PROG, quiet:bool = False, veryquiet:bool = False) -> None:
	'''Body of one copy process. Prints one line for the outcome and exits with status 1 if the copy failed.'''

	if _mp_context.get_start_method() != "fork":
		# forked tasks inherit the handlers of `sync()`
		_add_console_handlers(quiet=quiet, veryquiet=veryquiet)

	try:
		mode = _creation_mode(src)
		written = _copy(src, dst_dir, mode=mode, module=module)
	except CopyError as e:
		logger.error(_error_line(module, e))
		sys.exit(1)
	logger.info(f"pid: {os.getpid()}; source: {src}; bytes copied: {written}")

def _error_line(module:str, e:BaseException) -> str:
	'''
	Get a one-line summary of an Error, starting with the label of the acting program.

	>>> _error_line("dsync", DestExistsError("File exists", "/tmp/dst/a.txt"))
	'dsync: File exists /tmp/dst/a.txt'
	>>> _error_line("dsync", PathError("Can not sync directory with itself"))
	'dsync: Can not sync directory with itself'
	'''

	if isinstance(e, SyncError):
		message = e.message
		path = e.path
	elif isinstance(e, OSError):
		message = e.strerror or type(e).__name__
		path = e.filename
	else:
		message = f"{type(e).__name__}: {e}"
		path = None
	if path is None:
		return f"{module}: {message}"
	return f"{module}: {message} {path}"

def main() -> None:
	try:
		results = sync_cmd(sys.argv[1:])
	except Exception:
		print()
		traceback.print_exc()
		sys.exit(1)
	sys.exit(0 if results.success else 1)

if __name__ == "__main__":
	main()
