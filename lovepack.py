#!/usr/bin/env python3
"""
lovepack — Package, publish and run LÖVE games for Windows.

Archives the game source into a .love container, downloads a LÖVE runtime
once per version into a local cache, and fuses love.exe with the container
into a standalone executable next to the DLLs it needs.

Project layout (relative to the current directory):
  game.ini    name=... and love_version=...
  src/        game source, main.lua at its root
  build/      output of package/publish (removed by clean)
  runtimes/   cached LÖVE distributions (never removed by clean)

Usage:
  python lovepack.py package    # build/game.love only
  python lovepack.py publish    # build/love-<version>-win64/<Name>.exe
  python lovepack.py run        # lovec.exe src/
  python lovepack.py clean
"""

import argparse
import http.client
import os
import shutil
import subprocess
import sys
import urllib.error
import urllib.request
import zipfile
from dataclasses import dataclass
from typing import Optional

CONFIG_FILE = "game.ini"
SOURCE_DIR = "src"
BUILD_DIR = "build"
RUNTIMES_DIR = "runtimes"
CONTAINER_NAME = "game.love"
CONTAINER_TMP_NAME = "game.zip"

RUNTIME_NAME = "love"
RUNTIME_PLATFORM = "win64"
EXE_EXT = "exe"
RELEASES_URL = "https://github.com/love2d/love/releases/download"

LAUNCHER = "love.exe"
DEBUG_LAUNCHER = "lovec.exe"

# Everything a fused game needs at runtime; the rest of the LÖVE
# distribution (launchers, changelog, readme, icons) is pruned.
RETAINED_FILES = [
    "SDL2.dll",
    "OpenAL32.dll",
    "license.txt",
    "love.dll",
    "lua51.dll",
    "mpg123.dll",
    "msvcp120.dll",
    "msvcr120.dll",
]

REQUIRED_KEYS = ("name", "love_version")

CONFIG_TEMPLATE = """\
# lovepack project configuration
name=My Game
love_version=11.5
"""

# Fixed entry timestamp so unchanged sources give byte-identical containers.
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
CHUNK_SZ = 65536

COMMANDS = ("package", "publish", "run", "clean")


# ── Utility ───────────────────────────────────────────────────────────

def die(msg):
    print(f"\n  ERROR: {msg}", file=sys.stderr)
    sys.exit(1)


def _rm(path):
    """Remove a file or directory tree if it exists."""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.unlink(path)


class LovepackError(Exception):
    """An error reported to the user; aborts the current command."""


class ConfigError(LovepackError):
    """game.ini is missing, malformed or lacks a required key."""


class ResourceMissingError(LovepackError):
    """A file or directory the command depends on does not exist."""


class AcquireError(LovepackError):
    """A runtime could not be downloaded or extracted."""


# ── Configuration ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class GameConfig:
    name: str
    love_version: str

    @property
    def exe_name(self):
        return fused_exe_name(self.name)


@dataclass(frozen=True)
class ProjectPaths:
    """Filesystem layout of a project rooted at ``root``."""

    root: str
    runtimes_override: Optional[str] = None

    @property
    def config(self):
        return os.path.join(self.root, CONFIG_FILE)

    @property
    def src(self):
        return os.path.join(self.root, SOURCE_DIR)

    @property
    def build(self):
        return os.path.join(self.root, BUILD_DIR)

    @property
    def runtimes(self):
        return self.runtimes_override or os.path.join(self.root, RUNTIMES_DIR)

    @property
    def container(self):
        return os.path.join(self.build, CONTAINER_NAME)

    @property
    def container_tmp(self):
        return os.path.join(self.build, CONTAINER_TMP_NAME)


def project_paths(root):
    """Layout for ``root``, honouring $LOVEPACK_RUNTIMES for a shared cache."""
    return ProjectPaths(root, os.environ.get("LOVEPACK_RUNTIMES") or None)


def parse_config(text):
    """Parse ``key=value`` lines into a dict with lowercased keys."""
    values = {}
    for lineno, raw in enumerate(text.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith(("#", ";")):
            continue
        if "=" not in line:
            raise ConfigError(
                f"{CONFIG_FILE}:{lineno}: expected key=value, got {line!r}"
            )
        key, value = line.split("=", 1)
        values[key.strip().lower()] = value.strip()
    return values


def load_config(path):
    """Read game.ini, writing a template and failing if it doesn't exist."""
    if not os.path.isfile(path):
        with open(path, "w") as f:
            f.write(CONFIG_TEMPLATE)
        raise ConfigError(
            f"No {CONFIG_FILE} found; wrote a template to {path}. "
            "Edit it and re-run."
        )

    with open(path) as f:
        values = parse_config(f.read())

    missing = [k for k in REQUIRED_KEYS if not values.get(k)]
    if missing:
        raise ConfigError(
            f"{CONFIG_FILE} is missing required key(s): {', '.join(missing)}"
        )
    return GameConfig(name=values["name"], love_version=values["love_version"])


def fused_exe_name(name):
    return "".join(name.split()) + "." + EXE_EXT


# ── Runtime cache ─────────────────────────────────────────────────────

def runtime_dir_name(version):
    return f"{RUNTIME_NAME}-{version}-{RUNTIME_PLATFORM}"


def runtime_archive_name(version):
    return runtime_dir_name(version) + ".zip"


def runtime_url(version):
    return f"{RELEASES_URL}/{version}/{runtime_archive_name(version)}"


def download(url, dest):
    """Fetch ``url`` to ``dest``.

    Data is streamed into ``dest + '.part'`` and renamed onto ``dest`` only
    once the transfer has completed, so ``dest`` existing always means a
    whole file.
    """
    part = dest + ".part"
    print(f"       Downloading {url}")
    try:
        with urllib.request.urlopen(url) as resp, open(part, "wb") as out:
            for chunk in iter(lambda: resp.read(CHUNK_SZ), b""):
                out.write(chunk)
        os.replace(part, dest)
    except (urllib.error.URLError, http.client.HTTPException,
            ValueError, OSError) as e:
        _rm(part)
        raise AcquireError(f"Failed to download {url}: {e}") from e
    mb = os.path.getsize(dest) / 1024 / 1024
    print(f"       {mb:.1f} MB")


def extract_archive(archive, dest_dir):
    """Extract a zip archive into ``dest_dir``."""
    os.makedirs(dest_dir, exist_ok=True)
    with zipfile.ZipFile(archive) as zf:
        zf.extractall(dest_dir)


def acquire_runtime(version, runtimes_dir, fetch=download,
                    extract=extract_archive):
    """Return the cached runtime directory for ``version``, fetching it once.

    An existing directory is trusted as-is. Extraction happens in a staging
    directory and the runtime is renamed into place afterwards, so the
    directory only ever exists once fully extracted.
    """
    target = os.path.join(runtimes_dir, runtime_dir_name(version))
    if os.path.isdir(target):
        print(f"       Using cached runtime {target}")
        return target

    os.makedirs(runtimes_dir, exist_ok=True)
    archive = os.path.join(runtimes_dir, runtime_archive_name(version))
    if not os.path.isfile(archive):
        fetch(runtime_url(version), archive)
        if not os.path.isfile(archive):
            raise AcquireError(f"Download produced no archive at {archive}")

    staging = os.path.join(runtimes_dir, f".extract-{runtime_dir_name(version)}")
    _rm(staging)
    print(f"       Extracting {os.path.basename(archive)}")
    try:
        try:
            extract(archive, staging)
        except zipfile.BadZipFile as e:
            # Drop it so the next run downloads a fresh copy.
            os.unlink(archive)
            raise AcquireError(f"Corrupt runtime archive {archive}: {e}") from e
        except (OSError, RuntimeError, zipfile.LargeZipFile) as e:
            raise AcquireError(f"Failed to extract {archive}: {e}") from e

        extracted = os.path.join(staging, runtime_dir_name(version))
        if not os.path.isdir(extracted):
            raise AcquireError(
                f"{os.path.basename(archive)} does not contain "
                f"{runtime_dir_name(version)}/"
            )
        os.replace(extracted, target)
    finally:
        _rm(staging)

    return target


# ── Packaging ─────────────────────────────────────────────────────────

def compress_dir(src_dir, archive_path):
    """Zip every entry under ``src_dir`` with paths relative to it.

    Entries are written in sorted order with a fixed timestamp. Empty
    directories get an explicit ``name/`` entry; other directories are
    implied by the files they contain.
    """
    with zipfile.ZipFile(archive_path, "w", zipfile.ZIP_DEFLATED) as zf:
        for root, dirs, files in os.walk(src_dir):
            dirs.sort()
            if not dirs and not files and root != src_dir:
                arcname = os.path.relpath(root, src_dir).replace(os.sep, "/")
                info = zipfile.ZipInfo(arcname + "/", date_time=ZIP_EPOCH)
                info.external_attr = (0o40755 << 16) | 0x10
                zf.writestr(info, b"")
            for f in sorted(files):
                filepath = os.path.join(root, f)
                arcname = os.path.relpath(filepath, src_dir).replace(os.sep, "/")
                info = zipfile.ZipInfo(arcname, date_time=ZIP_EPOCH)
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = (os.stat(filepath).st_mode & 0xFFFF) << 16
                with open(filepath, "rb") as fh:
                    zf.writestr(info, fh.read(), compresslevel=9)


def package(src_dir, paths, compress=compress_dir):
    """Compress ``src_dir`` into build/game.love and return its path."""
    if not os.path.isdir(src_dir):
        raise ResourceMissingError(f"Source directory not found: {src_dir}")

    os.makedirs(paths.build, exist_ok=True)
    tmp = paths.container_tmp
    _rm(tmp)
    try:
        compress(src_dir, tmp)
    except BaseException:
        _rm(tmp)
        raise

    _rm(paths.container)
    os.replace(tmp, paths.container)

    kb = os.path.getsize(paths.container) / 1024
    print(f"       {kb:.0f} KB → {paths.container}")
    return paths.container


# ── Fusion ────────────────────────────────────────────────────────────

def prune(directory, keep):
    """Remove every entry of ``directory`` whose name is not in ``keep``.

    Returns the sorted names of what was removed.
    """
    keep = set(keep)
    removed = []
    for entry in sorted(os.listdir(directory)):
        if entry not in keep:
            _rm(os.path.join(directory, entry))
            removed.append(entry)
    return removed


def fuse(runtime_dir, container, app_name, keep=RETAINED_FILES):
    """Append ``container`` to the runtime's love.exe as ``<AppName>.exe``.

    The fused file is the launcher bytes immediately followed by the
    container bytes; love.exe finds the appended zip on its own. Afterwards
    ``runtime_dir`` is pruned down to ``keep`` plus the fused executable.
    """
    launcher = os.path.join(runtime_dir, LAUNCHER)
    if not os.path.isfile(launcher):
        raise ResourceMissingError(f"{LAUNCHER} not found in {runtime_dir}")
    if not os.path.isfile(container):
        raise ResourceMissingError(f"Container not found: {container}")

    with open(launcher, "rb") as f:
        launcher_data = f.read()
    with open(container, "rb") as f:
        container_data = f.read()

    exe_name = fused_exe_name(app_name)
    output_path = os.path.join(runtime_dir, exe_name)
    with open(output_path, "wb") as out:
        out.write(launcher_data + container_data)
    os.chmod(output_path, 0o755)

    removed = prune(runtime_dir, list(keep) + [exe_name])
    if removed:
        print(f"       Pruned {', '.join(removed)}")

    total_mb = os.path.getsize(output_path) / 1024 / 1024
    print(f"       Total: {total_mb:.1f} MB → {output_path}")
    return output_path


# ── Commands ──────────────────────────────────────────────────────────

def _banner(command, config, paths):
    print(f"\n  lovepack {command}")
    print(f"  game:    {config.name}")
    print(f"  love:    {config.love_version}")
    print(f"  root:    {paths.root}")
    print()


def cmd_package(config, paths):
    """Build the .love container only."""
    _banner("package", config, paths)
    print(f"[1/1] Packaging {SOURCE_DIR}/...")
    package(paths.src, paths)
    print(f"\n  [✓] Package complete!\n")
    return 0


def cmd_publish(config, paths, fetch=download):
    """Build a fused, pruned distribution under build/."""
    _banner("publish", config, paths)

    _rm(paths.build)
    os.makedirs(paths.build)

    print(f"[1/4] Packaging {SOURCE_DIR}/...")
    container = package(paths.src, paths)

    print(f"[2/4] Acquiring LÖVE {config.love_version}...")
    runtime = acquire_runtime(config.love_version, paths.runtimes, fetch=fetch)

    print("[3/4] Copying runtime...")
    dist_dir = os.path.join(paths.build, os.path.basename(runtime))
    shutil.copytree(runtime, dist_dir)

    print("[4/4] Fusing executable...")
    exe = fuse(dist_dir, container, config.name)

    print(f"\n  [✓] Publish complete!")
    print(f"      Distribute the contents of {dist_dir}")
    print(f"      Run with: {exe}\n")
    return 0


def _launch(cmd):
    return subprocess.run(cmd).returncode


def cmd_run(config, paths, fetch=download, launch=_launch):
    """Run the game from src/ with the console launcher."""
    _banner("run", config, paths)

    print(f"[1/2] Acquiring LÖVE {config.love_version}...")
    runtime = acquire_runtime(config.love_version, paths.runtimes, fetch=fetch)

    debug_launcher = os.path.join(runtime, DEBUG_LAUNCHER)
    if not os.path.isfile(debug_launcher):
        raise ResourceMissingError(f"{DEBUG_LAUNCHER} not found in {runtime}")
    if not os.path.isdir(paths.src):
        raise ResourceMissingError(f"Source directory not found: {paths.src}")

    print(f"[2/2] Launching {DEBUG_LAUNCHER} {SOURCE_DIR}/...")
    return launch([debug_launcher, paths.src])


def cmd_clean(config, paths):
    """Remove build/. The runtime cache is left alone."""
    if os.path.isdir(paths.build):
        _rm(paths.build)
        print(f"  Cleaned {paths.build}")
    else:
        print(f"  Nothing to clean at {paths.build}")
    return 0


COMMAND_HANDLERS = {
    "package": cmd_package,
    "publish": cmd_publish,
    "run": cmd_run,
    "clean": cmd_clean,
}


# ── CLI ──────────────────────────────────────────────────────────────

def main(argv=None, root=None):
    parser = argparse.ArgumentParser(
        prog="lovepack",
        description="Package, publish and run LÖVE games for Windows.",
    )
    parser.add_argument(
        "command", nargs="?", type=str.lower,
        metavar="{" + ",".join(COMMANDS) + "}",
        help="package: build game.love; publish: fuse a standalone "
             "executable; run: start the game from src/; clean: remove build/",
    )
    args, extra = parser.parse_known_args(argv)

    if extra or args.command not in COMMANDS:
        parser.print_usage(sys.stderr)
        return 1

    paths = project_paths(root or os.getcwd())
    try:
        config = load_config(paths.config)
        return COMMAND_HANDLERS[args.command](config, paths)
    except (LovepackError, OSError) as e:
        die(str(e))


if __name__ == "__main__":
    sys.exit(main())
