"""Fake docker-compatible CLI used by the test suite.

Invoked through a shell wrapper (see ``conftest.py``) with ``FAKE_STATE_DIR``
pointing at a per-test directory where every call is recorded.

Supported commands::

    [--namespace=x] version | ps
    [--namespace=x] image inspect IMAGE
    [--namespace=x] pull IMAGE
    [--namespace=x] run [options] IMAGE EXECUTOR SCRIPT
    [--namespace=x] kill NAME
    [--namespace=x] rm --force NAME

Images:
    ``remote/*``        absent until pulled
    ``remote/flaky-N``  pull fails N times, then succeeds
    ``remote/unknown``  pull always fails
    ``fake/broken``     ``run`` fails to start (exit 125)
    anything else       present

Executors other than ``/bin/sh`` and ``/bin/bash`` do not exist in any image.

For ``fake/*`` and ``remote/*`` images ``run`` does not execute the script:
it reads it from the host side of the script mount and interprets one
directive per line::

    echo TEXT         line on stdout
    stderr TEXT       line on stderr
    result K=V        append a line to /result/data.toml (through the mount)
    raw TEXT          append TEXT verbatim to the result artifact
    sleep SECONDS
    exit CODE
    flood BYTES       write BYTES bytes to stdout
    write PATH        write a file at an in-container PATH (mount/rootfs rules apply)
    net               outbound network probe
    ls                list the working directory
    break-result      replace the result artifact with a directory

Any other image (``alpine:3.15``, ``node:16-alpine3.15``, ...) runs the script
with the host ``/bin/sh``. Mount targets in the script text are rewritten to
their host paths, the working directory is the host side of ``--workdir``,
and ``PATH`` holds only the basic tools listed in ``IMAGE_TOOLS``, so
package managers such as ``apk`` or ``npm`` are missing as in a bare image.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import sys
import time
from pathlib import Path

STATE = Path(os.environ["FAKE_STATE_DIR"])
EXECUTORS = {"/bin/sh", "/bin/bash"}
DIRECTIVE_IMAGES = ("fake/", "remote/")
IMAGE_TOOLS = ("du", "cut", "cat", "ls", "wc", "head", "tail", "grep", "sed", "tr", "sort")
VALUE_OPTIONS = {
    "--name", "--cap-drop", "--security-opt", "--network", "--tmpfs",
    "--label", "--workdir", "--volume", "-v", "--pull",
}


def record(name: str, value: str) -> None:
    with (STATE / name).open("a", encoding="utf-8") as handle:
        handle.write(value + "\n")


def counter(name: str) -> int:
    path = STATE / name
    count = int(path.read_text()) if path.exists() else 0
    path.write_text(str(count + 1))
    return count


def image_present(image: str) -> bool:
    if not image.startswith("remote/"):
        return True
    pulled = STATE / "pulled.txt"
    return pulled.exists() and image in pulled.read_text().splitlines()


def cmd_pull(image: str) -> int:
    record("pull-attempts.txt", image)
    attempt = counter("pull-" + image.replace("/", "_"))
    if image == "remote/unknown":
        print(f"Error response from daemon: pull access denied for {image}", file=sys.stderr)
        return 1
    if image.startswith("remote/flaky-"):
        failures = int(image.rsplit("-", 1)[1])
        if attempt < failures:
            print("toomanyrequests: You have reached your pull rate limit", file=sys.stderr)
            return 1
    record("pulled.txt", image)
    return 0


class Run:
    def __init__(self, args: list[str]) -> None:
        self.options: dict[str, list[str]] = {}
        self.flags: set[str] = set()
        positional: list[str] = []
        i = 0
        while i < len(args):
            arg = args[i]
            if positional:
                positional.append(arg)
            elif arg in VALUE_OPTIONS:
                key = "--volume" if arg == "-v" else arg
                self.options.setdefault(key, []).append(args[i + 1])
                i += 1
            elif arg.startswith("--"):
                self.flags.add(arg)
            else:
                positional.append(arg)
            i += 1
        self.image, self.executor, self.script = positional[0], positional[1], positional[2]
        self.name = self.options["--name"][0]
        self.mounts: list[tuple[str, str, str]] = []
        for spec in self.options.get("--volume", []):
            host, target, mode = spec.split(":")
            self.mounts.append((host, target, mode))

    def option(self, name: str) -> str | None:
        values = self.options.get(name)
        return values[-1] if values else None

    def resolve(self, path: str) -> tuple[Path | None, str]:
        """Map an in-container path to (host path, mode)."""
        best = None
        for host, target, mode in self.mounts:
            if path == target or path.startswith(target.rstrip("/") + "/"):
                if best is None or len(target) > len(best[1]):
                    best = (host, target, mode)
        if best is None:
            tmpfs = self.options.get("--tmpfs", [])
            if any(path.startswith(t.rstrip("/") + "/") for t in tmpfs):
                return None, "tmpfs"
            return None, "ro" if "--read-only" in self.flags else "rootfs"
        host, target, mode = best
        return Path(host + path[len(target):]), mode


def write_result(run: Run, text: str) -> None:
    host, mode = run.resolve("/result/data.toml")
    if host is None or mode != "rw":
        raise PermissionError("result area not writable")
    with host.open("a", encoding="utf-8") as handle:
        handle.write(text)


def image_path() -> str:
    bin_dir = STATE / "image-bin"
    bin_dir.mkdir(exist_ok=True)
    for tool in IMAGE_TOOLS:
        target = shutil.which(tool)
        link = bin_dir / tool
        if target and not link.exists():
            try:
                link.symlink_to(target)
            except FileExistsError:
                pass
    return str(bin_dir)


def exec_shell(run: Run) -> None:
    """Replace this process with the host shell running the rewritten script."""
    script_host, _ = run.resolve(run.script)
    text = script_host.read_text(encoding="utf-8")
    host_for = {target: host for host, target, _ in run.mounts}
    targets = sorted(host_for, key=len, reverse=True)
    if targets:
        text = re.sub("|".join(map(re.escape, targets)), lambda match: host_for[match.group(0)], text)
    workdir, _ = run.resolve(run.option("--workdir") or "/")
    if workdir is not None:
        os.chdir(workdir)
    sys.stdout.flush()
    os.execve(run.executor, [run.executor, "-c", text], {"PATH": image_path(), "HOME": str(STATE)})


def cmd_run(args: list[str]) -> int:
    run = Run(args)
    record("runs.jsonl", json.dumps({"name": run.name, "argv": args}))

    if run.image == "fake/broken":
        print("docker: Error response from daemon: failed to create task for container: unknown.", file=sys.stderr)
        return 125
    if run.executor not in EXECUTORS:
        print(
            "docker: Error response from daemon: failed to create shim task: OCI runtime create failed: "
            "runc create failed: unable to start container process: "
            f'exec: "{run.executor}": stat {run.executor}: no such file or directory: unknown.',
            file=sys.stderr,
        )
        return 127

    (STATE / "pids").mkdir(exist_ok=True)
    (STATE / "pids" / run.name).write_text(str(os.getpid()))

    if not run.image.startswith(DIRECTIVE_IMAGES):
        exec_shell(run)

    script_host, _ = run.resolve(run.script)
    lines = script_host.read_text(encoding="utf-8").splitlines() if script_host else []
    for line in lines:
        command, _, rest = line.strip().partition(" ")
        if command == "echo":
            print(rest, flush=True)
        elif command == "stderr":
            print(rest, file=sys.stderr, flush=True)
        elif command == "result":
            write_result(run, rest + "\n")
        elif command == "raw":
            write_result(run, rest.replace("\\n", "\n"))
        elif command == "sleep":
            time.sleep(float(rest))
        elif command == "exit":
            return int(rest)
        elif command == "flood":
            sys.stdout.write("x" * int(rest))
            sys.stdout.flush()
        elif command == "write":
            host, mode = run.resolve(rest)
            if mode == "ro":
                print(f"sh: can't create {rest}: Read-only file system", file=sys.stderr)
                return 1
            if host is not None:
                host.write_text("written", encoding="utf-8")
        elif command == "net":
            if run.option("--network") == "none":
                print("wget: bad address 'registry.npmjs.org'", file=sys.stderr)
                return 1
            print("connected")
        elif command == "ls":
            workdir, _ = run.resolve(run.option("--workdir") or "/")
            if workdir is not None:
                print(" ".join(sorted(p.name for p in workdir.iterdir())))
        elif command == "break-result":
            host, _ = run.resolve("/result/data.toml")
            if host is not None:
                host.unlink(missing_ok=True)
                host.mkdir()
    return 0


def cmd_kill(name: str) -> int:
    record("killed.txt", name)
    pid_file = STATE / "pids" / name
    if not pid_file.exists():
        print(f"Error response from daemon: No such container: {name}", file=sys.stderr)
        return 1
    try:
        os.kill(int(pid_file.read_text()), 9)
    except ProcessLookupError:
        pass
    return 0


def main(argv: list[str]) -> int:
    if argv and argv[0].startswith("--namespace="):
        record("namespaces.txt", argv[0].split("=", 1)[1])
        argv = argv[1:]
    if not argv:
        return 2
    command, args = argv[0], argv[1:]
    if command == "version":
        print("fake-cli version 1.0")
        return 0
    if command == "ps":
        print("CONTAINER ID   IMAGE   COMMAND   CREATED   STATUS   PORTS   NAMES")
        return 0
    if command == "image" and args[:1] == ["inspect"]:
        return 0 if image_present(args[1]) else 1
    if command == "pull":
        return cmd_pull(args[0])
    if command == "run":
        return cmd_run(args)
    if command == "kill":
        return cmd_kill(args[0])
    if command == "rm":
        record("removed.txt", args[-1])
        return 0
    print(f"unknown command: {command}", file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
