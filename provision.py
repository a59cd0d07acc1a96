import argparse
import hashlib
import os
import sys
import shlex
import shutil
import platform
import subprocess
import tarfile
import tempfile
import zlib
import requests
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Optional


MUSL_VERSION = "1.1.15"
OPENSSL_VERSION = "1.0.2m"

DEPENDENCIES = [
    "ca-certificates",
    "curl",
    "m4",
    "make",
    "perl",
    "pkg-config",
    "g++",
]

CHUNK_SIZE = 64 * 1024


class ProvisionError(Exception):
    pass


class BuildTarget:
    os_variant = (str,)
    triple = (str,)
    extra_flags = (tuple,)

    def __init__(self, os_variant: str, triple: str, extra_flags: List[str]) -> None:
        self.os_variant = os_variant
        self.triple = triple
        self.extra_flags = tuple(extra_flags)

    def tool(self, name: str) -> str:
        return f"{self.triple}{name}"


class Config:
    musl_version = (str,)
    openssl_version = (str,)
    musl_site = (str,)
    openssl_site = (str,)
    musl_sha256 = (Optional[str],)
    openssl_sha256 = (Optional[str],)

    musl_prefix = (Path,)
    openssl_prefix = (Path,)
    host_ar = (str,)

    dependencies = (List[str],)
    jobs = (int,)
    keep_workspace = (bool,)
    purge = (bool,)

    def __init__(self, args: argparse.Namespace) -> None:
        self.musl_version = args.musl_version
        self.openssl_version = args.openssl_version
        self.musl_site = args.musl_site.rstrip("/")
        self.openssl_site = args.openssl_site.rstrip("/")
        self.musl_sha256 = args.musl_sha256
        self.openssl_sha256 = args.openssl_sha256

        self.musl_prefix = Path(args.musl_prefix).absolute()
        self.openssl_prefix = Path(args.openssl_prefix).absolute()
        self.host_ar = args.host_ar

        self.dependencies = [i for i in args.dependencies.split(",") if i]
        self.jobs = args.jobs
        self.keep_workspace = args.keep_workspace
        self.purge = args.purge

    def musl_url(self) -> str:
        return f"{self.musl_site}/releases/musl-{self.musl_version}.tar.gz"

    def openssl_url(self) -> str:
        return f"{self.openssl_site}/source/openssl-{self.openssl_version}.tar.gz"

    def dependencies_summary(self) -> None:
        print("\nDependencies:")
        print(f"     musl {self.musl_version} -> {self.musl_prefix}")
        print(f"  openssl {self.openssl_version} -> {self.openssl_prefix}\n")


class MuslInstall:
    prefix = (Path,)
    ar = (Path,)

    def __init__(self, prefix: Path, ar: Path) -> None:
        self.prefix = prefix
        self.ar = ar


def run(cmd: List[str], cwd: Optional[Path] = None, env: Optional[Dict[str, str]] = None) -> None:
    # env holds only the variables to set on top of the current environment
    assignments = ""
    full_env = None

    if env:
        assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in env.items()) + " "
        full_env = dict(os.environ)
        full_env.update(env)

    print(f"+ {assignments}{shlex.join(cmd)}", flush=True)
    subprocess.run(cmd, cwd=cwd, env=full_env, check=True)


def capture(cmd: List[str]) -> subprocess.CompletedProcess:
    return subprocess.run(cmd, capture_output=True, text=True)


def is_linux() -> bool:
    return platform.system() == "Linux"


def available_cpus() -> int:
    # like nproc, count only the cores this process may run on
    if hasattr(os, "sched_getaffinity"):
        return len(os.sched_getaffinity(0))
    return os.cpu_count() or 1


def is_installed(package: str) -> bool:
    # dpkg -L lists the files a package owns, and fails for unknown packages
    completed = capture(["dpkg", "-L", package])
    return completed.returncode == 0 and completed.stdout.strip() != ""


def bootstrap_dependencies(dependencies: List[str]) -> List[str]:
    run(["apt-get", "update"])

    installed = []

    for package in dependencies:
        if is_installed(package):
            print(f"Checking for package {package} (installed)")
            continue

        print(f"Checking for package {package} (missing)")
        run(["apt-get", "install", "--no-install-recommends", "-y", package])
        installed.append(package)

    return installed


def purge_dependencies(installed: List[str]) -> None:
    if not installed:
        return

    run(["apt-get", "purge", "--auto-remove", "-y", *installed])


def _exists(cmd: str, msg: str) -> bool:
    path = shutil.which(cmd)
    if path is not None:
        print(f"{msg}: {cmd} ({path})")
        return True
    else:
        print(f"{msg}: {cmd} (doesn't exists)")
        return False


def try_get_tools(target: BuildTarget) -> bool:
    failed = False

    if not _exists(target.tool("gcc"), "Checking for C compiler"):
        failed = True
    if not _exists(target.tool("ar"), "Checking for archiver"):
        failed = True
    if not _exists("make", "Checking for tool make"):
        failed = True
    if not _exists("nice", "Checking for tool nice"):
        failed = True

    return failed


def download(url: str, dest: Path, sha256: Optional[str] = None) -> Path:
    print(f"Downloading {url}")
    digest = hashlib.sha256()

    with requests.get(url, stream=True) as response:
        response.raise_for_status()

        with open(dest, "wb") as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                digest.update(chunk)
                f.write(chunk)

    if sha256 and digest.hexdigest() != sha256.lower():
        raise ProvisionError(
            f"checksum mismatch for {url}: expected {sha256.lower()}, got {digest.hexdigest()}"
        )

    return dest


def _strip_top(name: str) -> List[str]:
    parts = PurePosixPath(name).parts

    if parts and parts[0] == "/":
        raise ProvisionError(f"absolute path in archive: {name}")
    if ".." in parts:
        raise ProvisionError(f"path escapes archive: {name}")

    return list(parts)


def extract(archive: Path, dest: Path) -> None:
    print(f"Extracting {archive.name} at {dest}")

    try:
        _extract_stripped(archive, dest)
    except (tarfile.TarError, EOFError, zlib.error) as e:
        raise ProvisionError(f"{archive.name}: {e}") from e


def _extract_stripped(archive: Path, dest: Path) -> None:
    with tarfile.open(archive, "r:*") as tar:
        members = tar.getmembers()
        top_level = set()
        selected = []

        for member in members:
            parts = _strip_top(member.name)
            if not parts:
                continue

            top_level.add(parts[0])

            if len(parts) == 1:
                if not member.isdir():
                    raise ProvisionError(f"{archive.name}: file {member.name} outside top-level directory")
                continue

            member.name = "/".join(parts[1:])

            if member.islnk():
                link = _strip_top(member.linkname)
                member.linkname = "/".join(link[1:])

            selected.append(member)

        if len(top_level) != 1:
            raise ProvisionError(
                f"{archive.name}: expected one top-level directory, found {len(top_level)}"
            )

        tar.extractall(dest, members=selected, filter="data")


@contextmanager
def workspace(name: str, url: str, sha256: Optional[str] = None, keep: bool = False) -> Iterator[Path]:
    """A fresh temporary directory holding the unpacked sources from ``url``.

    The directory is removed when the block exits, whether or not it raised,
    unless ``keep`` is set.
    """
    path = Path(tempfile.mkdtemp(prefix=f"{name}-"))

    try:
        archive = download(url, path / url.rsplit("/", 1)[-1], sha256)
        extract(archive, path)
        archive.unlink()
        yield path
    finally:
        if keep:
            print(f"Keeping workspace at {path}")
        else:
            shutil.rmtree(path, ignore_errors=True)


def musl_cflags(target: BuildTarget) -> List[str]:
    return ["-fPIC", *target.extra_flags]


def musl_configure_args(target: BuildTarget, config: Config) -> List[str]:
    args = [
        "./configure",
        "--disable-shared",
        f"--prefix={config.musl_prefix}",
    ]

    if target.triple:
        args.append(f"--target={target.triple}")

    return args


def install_ar_shim(host_ar: str, prefix: Path) -> Path:
    shim = prefix / "bin" / "musl-ar"

    if shim.is_symlink() and os.readlink(shim) == host_ar:
        print(f"Archiver shim {shim} already points at {host_ar}")
        return shim
    if shim.is_symlink() or shim.exists():
        raise ProvisionError(f"{shim} already exists and does not point at {host_ar}")

    print(f"+ ln -s {host_ar} {shim}")
    shim.parent.mkdir(parents=True, exist_ok=True)
    shim.symlink_to(host_ar)
    return shim


def build_musl(target: BuildTarget, config: Config, source_dir: Path) -> MuslInstall:
    print(f"Configuring musl {config.musl_version}")
    run(
        musl_configure_args(target, config),
        cwd=source_dir,
        env={"CFLAGS": " ".join(musl_cflags(target))},
    )

    print(f"Building musl {config.musl_version}")
    run(["nice", "make", f"-j{config.jobs}"], cwd=source_dir)

    print(f"Installing musl {config.musl_version}")
    run(["nice", "make", "install"], cwd=source_dir)

    ar = install_ar_shim(config.host_ar, config.musl_prefix)
    return MuslInstall(config.musl_prefix, ar)


def openssl_configure_args(target: BuildTarget, config: Config) -> List[str]:
    # extra flags go last so Configure lets them override the defaults
    return [
        "./Configure",
        f"--prefix={config.openssl_prefix}",
        "no-dso",
        target.os_variant,
        "-fPIC",
        *target.extra_flags,
    ]


def openssl_env(target: BuildTarget) -> Dict[str, str]:
    return {"AR": target.tool("ar"), "CC": target.tool("gcc")}


def build_openssl(target: BuildTarget, musl: MuslInstall, config: Config, source_dir: Path) -> None:
    if not musl.ar.is_symlink():
        raise ProvisionError(f"musl is not installed: {musl.ar} is missing")

    print(f"Configuring openssl {config.openssl_version} against musl at {musl.prefix}")
    run(openssl_configure_args(target, config), cwd=source_dir, env=openssl_env(target))

    print(f"Building openssl {config.openssl_version}")
    run(["nice", "make", f"-j{config.jobs}"], cwd=source_dir)

    print(f"Installing openssl {config.openssl_version}")
    run(["make", "install"], cwd=source_dir)


def provision(target: BuildTarget, config: Config) -> List[str]:
    installed = bootstrap_dependencies(config.dependencies)

    if try_get_tools(target):
        raise ProvisionError("Some tools do not exist. You may need add them to your PATH.")

    config.dependencies_summary()

    with workspace("musl", config.musl_url(), config.musl_sha256, config.keep_workspace) as source_dir:
        musl = build_musl(target, config, source_dir)

    with workspace("openssl", config.openssl_url(), config.openssl_sha256, config.keep_workspace) as source_dir:
        build_openssl(target, musl, config, source_dir)

    return installed


def main(args: argparse.Namespace) -> int:
    if not is_linux():
        print(f"Host is {platform.system()}, nothing to do")
        return 0

    target = BuildTarget(args.os, args.triple, args.flags)
    config = Config(args)

    try:
        installed = provision(target, config)
    except subprocess.CalledProcessError as e:
        print(f"Error: {shlex.join(e.cmd)} exited with {e.returncode}", file=sys.stderr)
        return e.returncode
    except (ProvisionError, requests.RequestException, tarfile.TarError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if installed:
        print(f"Installed packages: {' '.join(installed)}")

    if config.purge:
        try:
            purge_dependencies(installed)
        except subprocess.CalledProcessError as e:
            print(f"Error: {shlex.join(e.cmd)} exited with {e.returncode}", file=sys.stderr)
            return e.returncode

    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="provision",
        description="Build static musl and OpenSSL for a cross toolchain.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "os",
        help="OpenSSL target passed verbatim to ./Configure, e.g. linux-armv4.",
    )
    parser.add_argument(
        "triple",
        help="Prefix of the cross tools, e.g. arm-linux-gnueabihf-. Empty for the host tools.",
    )
    parser.add_argument(
        "flags",
        nargs=argparse.REMAINDER,
        help="Extra flags appended to both builds.",
    )
    group = parser.add_argument_group("build options")
    group.add_argument(
        "--jobs",
        type=int,
        default=available_cpus(),
        help="Parallel make jobs.",
    )
    group.add_argument(
        "--keep-workspace",
        action="store_true",
        default=False,
        help="Do not delete the temporary source directories.",
    )
    group.add_argument(
        "--purge",
        action="store_true",
        default=False,
        help="Purge the packages this run installed once both builds succeed.",
    )
    group = parser.add_argument_group("install options")
    group.add_argument(
        "--musl-prefix",
        default="/usr/local",
        help="Directory where to install musl.",
    )
    group.add_argument(
        "--openssl-prefix",
        default="/openssl",
        help="Directory where to install OpenSSL.",
    )
    group.add_argument(
        "--host-ar",
        default="/usr/bin/ar",
        help="Archiver linked as <musl-prefix>/bin/musl-ar.",
    )
    group = parser.add_argument_group("dependencies")
    group.add_argument(
        "--dependencies",
        default=",".join(DEPENDENCIES),
        help="Comma separated apt packages to install when missing.",
    )
    group.add_argument(
        "--musl-version",
        default=MUSL_VERSION,  # https://www.musl-libc.org/releases
        help="Musl version to build.",
    )
    group.add_argument(
        "--openssl-version",
        default=OPENSSL_VERSION,  # https://www.openssl.org/source
        help="OpenSSL version to build.",
    )
    group.add_argument(
        "--musl-site",
        default="https://www.musl-libc.org",
        help="Where musl releases are downloaded from.",
    )
    group.add_argument(
        "--openssl-site",
        default="https://www.openssl.org",
        help="Where OpenSSL releases are downloaded from.",
    )
    group = parser.add_argument_group("integrity options")
    group.add_argument(
        "--musl-sha256",
        default=None,
        help="Expected sha256 of the musl tarball. Not checked when omitted.",
    )
    group.add_argument(
        "--openssl-sha256",
        default=None,
        help="Expected sha256 of the OpenSSL tarball. Not checked when omitted.",
    )
    return parser.parse_args(argv)


def cli() -> None:
    sys.exit(main(parse_args()))


if __name__ == "__main__":
    cli()
