import io
import os
import stat
import time
import errno
import contextlib
import tempfile
import unittest
import doctest
from pathlib import Path
from unittest import mock

import dsync

def read_files(root:Path) -> dict[str, bytes]:
	'''Name -> content of the regular files directly inside `root`.'''
	contents = {}
	for name in os.listdir(root):
		path = root / name
		if path.is_file():
			contents[name] = path.read_bytes()
	return contents

def create_file_structure(root_dir:Path, structure:dict):
	'''Recursively creates a directory structure with files.'''
	root_dir.mkdir(parents=True, exist_ok=True)
	for name, content in structure.items():
		file_path = root_dir / name
		if isinstance(content, Path):
			# create symlink
			os.symlink(content, file_path)
		elif isinstance(content, dict):
			# create dir
			create_file_structure(file_path, content)
		elif isinstance(content, bytes):
			file_path.write_bytes(content)
		elif content is None:
			# Create an empty file
			file_path.touch()
		else:
			# Create a file with content
			file_path.write_text(content)

def hold_slot(marker_dir:Path, name:str, delay:float):
	'''Copy-task stand-in that records how many tasks were running when it started.'''
	marker = marker_dir / (name + ".running")
	marker.touch()
	running = sum(1 for f in os.listdir(marker_dir) if f.endswith(".running"))
	(marker_dir / (name + ".seen")).write_text(str(running))
	time.sleep(delay)
	marker.unlink()

def fail_task():
	raise SystemExit(1)

@contextlib.contextmanager
def captured_output(root:Path):
	'''
	Points `sys.stdout` and `sys.stderr` at real files under `root` and yields their paths. Forked copy processes inherit the logging handlers, so their lines land in the same files.
	'''
	out_path = root / "stdout.txt"
	err_path = root / "stderr.txt"
	with open(out_path, "a", encoding="utf-8") as out, open(err_path, "a", encoding="utf-8") as err:
		with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
			yield out_path, err_path

def load_tests(loader, tests, ignore):
	tests.addTests(doctest.DocTestSuite(dsync))
	return tests

class TestSync(unittest.TestCase):
	def test_list_files(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"other": {
					"x.txt": "x",
				},
				"root": {
					"a.txt": "a",
					"b.bin": b"\x00\x01",
					"empty": None,
					"sub": {
						"nested.txt": "nested",
					},
				},
			})
			root = test_root / "root"
			create_file_structure(root, {
				"link-to-file": test_root / "other" / "x.txt",
				"link-to-dir": test_root / "other",
				"broken-link": test_root / "missing",
			})
			if hasattr(os, "mkfifo"):
				os.mkfifo(root / "fifo")

			files = dsync._list_files(root)
			self.assertEqual(
				sorted(f.name for f in files),
				["a.txt", "b.bin", "empty", "link-to-file"]
			)
			for f in files:
				self.assertTrue(f.is_absolute())
				self.assertEqual(f.parent, root.absolute())

			self.assertEqual(dsync._list_files(test_root / "root" / "sub"), [test_root.absolute() / "root" / "sub" / "nested.txt"])

	def test_list_files_unreadable(self):
		with tempfile.TemporaryDirectory() as temp_root:
			missing = Path(temp_root) / "missing"
			with self.assertRaises(dsync.ListError) as cm:
				dsync._list_files(missing)
			self.assertEqual(cm.exception.path, missing.absolute())

	@unittest.skipIf(os.name == "nt" or os.geteuid() == 0, "permission bits are not enforced")
	def test_list_files_permission_denied(self):
		with tempfile.TemporaryDirectory() as temp_root:
			locked = Path(temp_root) / "locked"
			create_file_structure(locked, {"a.txt": "a"})
			locked.chmod(0)
			try:
				with self.assertRaises(dsync.ListError):
					dsync._list_files(locked)
			finally:
				locked.chmod(0o700)

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_nameset(self):
		names = dsync._NameSet([Path("/d/Readme.md"), Path("/d/a.txt"), Path("/d/a.txt")])
		self.assertIn("a.txt", names)
		self.assertIn("Readme.md", names)
		self.assertNotIn("README.md", names)
		self.assertNotIn("d", names)
		self.assertEqual(len(names), 2)
		self.assertNotIn("a.txt", dsync._NameSet([]))

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	@unittest.skipIf(os.name == "nt", "POSIX permission bits")
	def test_creation_mode(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {"a.txt": "a"})
			(test_root / "a.txt").chmod(0o640)
			self.assertEqual(dsync._creation_mode(test_root / "a.txt"), 0o640)

			with self.assertRaises(dsync.ModeError) as cm:
				dsync._creation_mode(test_root / "missing.txt")
			self.assertEqual(cm.exception.path, test_root / "missing.txt")

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_copy(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			data = os.urandom(dsync.CHUNK_SIZE * 5 + 123)
			create_file_structure(test_root, {
				"src": {
					"big.bin": data,
					"empty": None,
				},
				"dst": {},
			})
			src = test_root / "src"
			dst = test_root / "dst"

			self.assertEqual(dsync._copy(src / "big.bin", dst), len(data))
			self.assertEqual((dst / "big.bin").read_bytes(), data)

			self.assertEqual(dsync._copy(src / "empty", dst), 0)
			self.assertEqual((dst / "empty").read_bytes(), b"")

	@unittest.skipIf(os.name == "nt", "POSIX permission bits")
	def test_copy_mode(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {"a.txt": "a", "b.txt": "b"},
				"dst": {},
			})
			src = test_root / "src"
			dst = test_root / "dst"

			dsync._copy(src / "a.txt", dst, mode=0o604)
			self.assertEqual(stat.S_IMODE((dst / "a.txt").stat().st_mode), 0o604)

			# read-only sources still get copied
			dsync._copy(src / "b.txt", dst, mode=0o400)
			self.assertEqual(stat.S_IMODE((dst / "b.txt").stat().st_mode), 0o400)
			self.assertEqual((dst / "b.txt").read_text(), "b")

	def test_copy_dest_exists(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {"a.txt": "new"},
				"dst": {"a.txt": "old"},
			})
			with self.assertRaises(dsync.DestExistsError) as cm:
				dsync._copy(test_root / "src" / "a.txt", test_root / "dst")
			self.assertEqual(cm.exception.path, Path(os.path.realpath(test_root / "dst")) / "a.txt")
			self.assertEqual((test_root / "dst" / "a.txt").read_text(), "old")

	def test_copy_source_missing(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {"src": {}, "dst": {}})
			with self.assertRaises(dsync.SourceOpenError):
				dsync._copy(test_root / "src" / "gone.txt", test_root / "dst")
			self.assertEqual(os.listdir(test_root / "dst"), [])

	def test_copy_partial_writes(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			data = os.urandom(dsync.CHUNK_SIZE * 3 + 17)
			create_file_structure(test_root, {
				"src": {"a.bin": data},
				"dst": {},
			})

			real_write = os.write
			real_read = os.read
			calls = {"write": 0, "read": 0}

			def short_write(fd, buf):
				calls["write"] += 1
				if calls["write"] % 3 == 0:
					raise InterruptedError(errno.EINTR, "Interrupted system call")
				return real_write(fd, bytes(buf[:1000]))

			def interrupted_read(fd, n):
				calls["read"] += 1
				if calls["read"] == 1:
					raise InterruptedError(errno.EINTR, "Interrupted system call")
				return real_read(fd, n)

			with mock.patch("dsync.os.write", side_effect=short_write), mock.patch("dsync.os.read", side_effect=interrupted_read):
				written = dsync._copy(test_root / "src" / "a.bin", test_root / "dst")

			self.assertEqual(written, len(data))
			self.assertEqual((test_root / "dst" / "a.bin").read_bytes(), data)
			self.assertGreater(calls["write"], len(data) // 1000)

	def test_copy_write_error(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			data = os.urandom(dsync.CHUNK_SIZE * 2 + 5)
			create_file_structure(test_root, {
				"src": {"a.bin": data},
				"dst": {},
			})

			real_write = os.write
			calls = []

			def full_disk(fd, buf):
				calls.append(len(buf))
				if len(calls) > 1:
					raise OSError(errno.ENOSPC, "No space left on device")
				return real_write(fd, buf)

			with mock.patch("dsync.os.write", side_effect=full_disk):
				with self.assertRaises(dsync.WriteError) as cm:
					dsync._copy(test_root / "src" / "a.bin", test_root / "dst")

			self.assertEqual(cm.exception.bytes_written, dsync.CHUNK_SIZE)
			self.assertEqual(len(calls), 2)
			# partial copy is left behind
			self.assertEqual((test_root / "dst" / "a.bin").read_bytes(), data[:dsync.CHUNK_SIZE])

	def test_copy_read_error(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			data = os.urandom(dsync.CHUNK_SIZE * 2)
			create_file_structure(test_root, {
				"src": {"a.bin": data},
				"dst": {},
			})

			real_read = os.read
			calls = []

			def bad_sector(fd, n):
				calls.append(n)
				if len(calls) > 1:
					raise OSError(errno.EIO, "Input/output error")
				return real_read(fd, n)

			with mock.patch("dsync.os.read", side_effect=bad_sector):
				with self.assertRaises(dsync.ReadError) as cm:
					dsync._copy(test_root / "src" / "a.bin", test_root / "dst")

			self.assertEqual(cm.exception.bytes_written, dsync.CHUNK_SIZE)
			self.assertEqual(cm.exception.path, test_root / "src" / "a.bin")
			self.assertEqual((test_root / "dst" / "a.bin").read_bytes(), data[:dsync.CHUNK_SIZE])

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_worker_pool(self):
		with tempfile.TemporaryDirectory() as temp_root:
			marker_dir = Path(temp_root)
			for limit in (2, 3):
				for f in os.listdir(marker_dir):
					os.remove(marker_dir / f)

				pool = dsync._WorkerPool(limit)
				for i in range(limit * 3):
					pool.submit(hold_slot, marker_dir, f"task{i}", 0.2)
					self.assertLessEqual(pool.in_flight, limit)
				pool.drain()

				self.assertEqual(pool.in_flight, 0)
				self.assertEqual(pool.submitted, limit * 3)
				self.assertEqual(pool.peak, limit)
				seen = [int((marker_dir / f"task{i}.seen").read_text()) for i in range(limit * 3)]
				self.assertLessEqual(max(seen), limit)
				self.assertFalse(any(f.endswith(".running") for f in os.listdir(marker_dir)))

	def test_worker_pool_failed_tasks_free_slots(self):
		pool = dsync._WorkerPool(2)
		for _ in range(5):
			pool.submit(fail_task)
		pool.drain()
		self.assertEqual(pool.submitted, 5)
		self.assertEqual(pool.in_flight, 0)

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_sync(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			big = os.urandom(dsync.CHUNK_SIZE * 4 + 1)
			create_file_structure(test_root, {
				"src": {
					"1.txt": "one",
					"2.txt": "two",
					"3.txt": "new three",
					"big.bin": big,
					"empty": None,
					"sub": {
						"nested.txt": "nested",
					},
				},
				"dst": {
					"3.txt": "old three",
					"extra.txt": "extra",
				},
			})
			src = test_root / "src"
			dst = test_root / "dst"

			results = dsync.sync(src, dst, 2, quiet=True)
			self.assertTrue(results.success)
			self.assertEqual(results.dispatched, 4)
			self.assertEqual(results.skipped, 1)
			self.assertLessEqual(results.peak_in_flight, 2)
			self.assertEqual(read_files(dst), {
				"1.txt": b"one",
				"2.txt": b"two",
				"3.txt": b"old three",
				"big.bin": big,
				"empty": b"",
				"extra.txt": b"extra",
			})
			self.assertFalse((dst / "sub").exists())

			# nothing left to copy
			with mock.patch.object(dsync, "_copy_task") as task:
				results = dsync.sync(src, dst, "3", quiet=True)
			self.assertTrue(results.success)
			self.assertEqual(results.dispatched, 0)
			self.assertEqual(results.skipped, 5)
			task.assert_not_called()

	@unittest.skipIf(os.name == "nt", "POSIX permission bits")
	def test_sync_mode(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {"a.sh": "#!/bin/sh\n", "b.txt": "b"},
				"dst": {},
			})
			(test_root / "src" / "a.sh").chmod(0o750)
			(test_root / "src" / "b.txt").chmod(0o600)

			results = dsync.sync(test_root / "src", test_root / "dst", 2, quiet=True)
			self.assertTrue(results.success)
			self.assertEqual(stat.S_IMODE((test_root / "dst" / "a.sh").stat().st_mode), 0o750)
			self.assertEqual(stat.S_IMODE((test_root / "dst" / "b.txt").stat().st_mode), 0o600)

	def test_sync_race(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {"a.txt": "a", "b.txt": "new b", "c.txt": "c"},
				"dst": {},
			})
			src = test_root / "src"
			dst = test_root / "dst"
			src_files = dsync._list_files(src)

			# b.txt shows up in dst after it was listed
			(dst / "b.txt").write_text("old b")
			out_dir = test_root / "out"
			out_dir.mkdir()
			with mock.patch.object(dsync, "_list_files", side_effect=[src_files, []]):
				with captured_output(out_dir) as (out_path, err_path):
					results = dsync.sync(src, dst, 2)

			self.assertTrue(results.success)
			self.assertEqual(results.dispatched, 3)
			self.assertEqual(read_files(dst), {"a.txt": b"a", "b.txt": b"old b", "c.txt": b"c"})

			# one line per copy process
			stdout_lines = out_path.read_text(encoding="utf-8").splitlines()
			stderr_lines = err_path.read_text(encoding="utf-8").splitlines()
			for name in ("a.txt", "c.txt"):
				copied = [line for line in stdout_lines if line.endswith(f"; source: {src.absolute() / name}; bytes copied: 1")]
				self.assertEqual(len(copied), 1)
				self.assertRegex(copied[0], r"^pid: \d+; ")
			self.assertFalse(any(str(src / "b.txt") in line for line in stdout_lines))
			self.assertEqual(stderr_lines, [f"dsync: File exists {Path(os.path.realpath(dst)) / 'b.txt'}"])

	def test_sync_same_dir(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {"src": {"a.txt": "a"}})
			create_file_structure(test_root, {"link": test_root / "src"})

			with mock.patch.object(dsync, "_list_files") as list_files:
				results = dsync.sync(test_root / "src", test_root / "link", 2, veryquiet=True)
			self.assertFalse(results.success)
			self.assertEqual(results.errors, ["dsync: Can not sync directory with itself"])
			list_files.assert_not_called()

	def test_sync_bad_args(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {"src": {"a.txt": "a"}, "dst": {}, "file": "x"})
			src = test_root / "src"
			dst = test_root / "dst"

			cases = [
				((src, dst, "two"),  "dsync: Maximum of running processes is not an integer"),
				((src, dst, "1_0"),  "dsync: Maximum of running processes is not an integer"),
				((src, dst, " 3"),   "dsync: Maximum of running processes is not an integer"),
				((src, dst, "٣"), "dsync: Maximum of running processes is not an integer"),
				((src, dst, "3x"),   "dsync: Maximum of running processes is not an integer"),
				((src, dst, "1"),    "dsync: Maximum of running processes must be greater or equal to 2"),
				((src, dst, 0),      "dsync: Maximum of running processes must be greater or equal to 2"),
				((src, test_root / "file", 2),    f"dsync: Not a directory {test_root / 'file'}"),
				((test_root / "missing", dst, 2), f"dsync: Not a directory {test_root / 'missing'}"),
			]
			for args, error in cases:
				with self.subTest(args=args):
					results = dsync.sync(*args, veryquiet=True)
					self.assertFalse(results.success)
					self.assertEqual(results.errors, [error])

			results = dsync.sync(src, dst, 2.5, veryquiet=True)
			self.assertFalse(results.success)
			self.assertTrue(results.errors[0].startswith("Input Error: "))

			self.assertEqual(os.listdir(dst), [])

	def test_sync_list_error(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {"src": {"a.txt": "a"}, "dst": {}})
			src = test_root / "src"
			dst = test_root / "dst"

			with mock.patch.object(dsync, "_list_files", side_effect=dsync.ListError("Permission denied", dst)), \
				 mock.patch.object(dsync, "_copy_task") as task:
				results = dsync.sync(src, dst, 2, veryquiet=True)
			self.assertFalse(results.success)
			self.assertEqual(results.errors, [f"dsync: Permission denied {dst}"])
			task.assert_not_called()

	def test_sync_dry_run(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {"a.txt": "a", "b.txt": "b"},
				"dst": {"b.txt": "b"},
			})
			stdout = io.StringIO()
			with contextlib.redirect_stdout(stdout):
				results = dsync.sync(test_root / "src", test_root / "dst", 2, dry_run=True)
			self.assertTrue(results.success)
			self.assertEqual(results.dispatched, 1)
			self.assertEqual(os.listdir(test_root / "dst"), ["b.txt"])
			self.assertIn("+ a.txt", stdout.getvalue().splitlines())
			self.assertIn("*** DRY RUN ***", stdout.getvalue())

	def test_sync_log(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {"a.txt": "a"},
				"dst": {},
			})
			log = test_root / "sync.log"
			results = dsync.sync(test_root / "src", test_root / "dst", 2, log=log, debug=True, quiet=True)
			self.assertTrue(results.success)
			self.assertEqual(results.log_file, log)
			text = log.read_text(encoding="utf-8")
			self.assertIn("DEBUG: Starting sync:", text)
			self.assertIn("INFO: *** dsync finished successfully. ***", text)

			# an existing log is never overwritten
			results = dsync.sync(test_root / "src", test_root / "dst", 2, log=log, veryquiet=True)
			self.assertFalse(results.success)
			self.assertEqual(results.errors, [f"dsync: Chosen log already exists {log}"])

	#~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

	def test_sync_cmd(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {
				"src": {"a.txt": "a"},
				"dst": {},
			})
			src = str(test_root / "src")
			dst = str(test_root / "dst")

			stderr = io.StringIO()
			with contextlib.redirect_stderr(stderr):
				results = dsync.sync_cmd([src, dst])
			self.assertFalse(results.success)
			self.assertTrue(stderr.getvalue().startswith("dsync: "))

			results = dsync.sync_cmd([src, dst, "4", "-qq"])
			self.assertTrue(results.success)
			self.assertEqual(read_files(test_root / "dst"), {"a.txt": b"a"})

	def test_main_exit_code(self):
		with tempfile.TemporaryDirectory() as temp_root:
			test_root = Path(temp_root)
			create_file_structure(test_root, {"src": {}, "dst": {}})
			src = str(test_root / "src")
			dst = str(test_root / "dst")

			with mock.patch("sys.argv", ["dsync", src, dst, "2", "-qq"]):
				with self.assertRaises(SystemExit) as cm:
					dsync.main()
			self.assertEqual(cm.exception.code, 0)

			with mock.patch("sys.argv", ["dsync", src, src, "2", "-qq"]):
				with self.assertRaises(SystemExit) as cm:
					dsync.main()
			self.assertEqual(cm.exception.code, 1)

if __name__ == "__main__":
	try:
		unittest.main()
	except SystemExit as e:
		pass
