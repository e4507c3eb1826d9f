# procjuggler

A library for keeping several local development processes running side by
side. Each project is started through `/bin/sh -c` in its own
pseudo-terminal and process group, its output is split into lines, kept in a
bounded in-memory buffer and written to a size-rotated log file, and a
restart policy decides what happens when it exits with a failure.

## Configuration

Projects, groups and settings are described in a YAML file. `resolve_path`
takes an explicit path first, then the `PROCS_CONFIG` environment variable,
then `~/.config/procs/config.yml`.

```yaml
projects:
  api:
    path: ~/code/api
    cmd: npm run dev
    restart: on-failure        # or "never" (the default)
    env:
      PORT: "3000"
    env_file: ~/code/api/.env
  web:
    path: $HOME/code/web
    cmd: npm start
groups:
  full: [api, web]
settings:
  log_buffer_lines: 1000
  log_rotate_size_mb: 10
  log_rotate_keep: 5
  restart_backoff_ms: [1000, 2000, 4000, 8000, 16000]
  restart_max_attempts: 5
```

Unknown keys are rejected. Project paths, `env_file` and `log_dir` may use
`~/` and `$VAR` or `${VAR}` (`expand_path`); an undefined variable or a
`~user` form is an error. Any setting that is missing or zero takes its value
from `default_settings()`.

```python
from procjuggler.config import load, ConfigError

try:
    cfg = load("")          # PROCS_CONFIG, then the default path
except ConfigError as exc:
    print(exc)
```

`load_from_path(path)` does the same for an already resolved path. Several
validation problems are reported together through `ConfigValidationError`.
`Project.build_env(base)` merges a base environment, the `env_file` (parsed
by `envfile.parse_env_file`) and the inline `env`, later ones winning, and
returns `KEY=VALUE` strings.

## Supervising processes

`manager.Manager(config, sink)` creates one `child.Child` per project on
demand. The children publish their lifecycle events (`StartedEvent`,
`ExitedEvent`, `StateChangedEvent`, `LogLineEvent`, `RestartingEvent` from
`procjuggler.events`) to one `queue.Queue` returned by `Manager.events()`;
when that queue is full, events are dropped rather than blocking.

```python
from procjuggler.config import load
from procjuggler.manager import Manager
from procjuggler.registry import Registry
from procjuggler.runtime import RuntimeStore

cfg = load("")
registry = Registry(cfg.settings)
runtime = RuntimeStore()
runtime.seed(cfg.projects)

manager = Manager(cfg, registry)
manager.start("api")
event = manager.events().get()
runtime.apply(event)
...
manager.close()
registry.close()
```

Manager operations: `start`, `stop`, `restart`, `start_group` (members
started `delay` seconds apart), `stop_all(timeout)`, `resize`, `attach`
(returns the running `terminal.PtyProcess`), `subscribe` (copies every byte
of terminal output to a writer and returns an unsubscribe function),
`reload` and `close`. `reload(new_config)` returns a `ReloadResult` listing
added, removed, changed and stopped projects; removed projects that had a
child are stopped, changed ones are only reported.

`registry.Registry` receives the raw output through `write_raw`, keeps the
latest lines of each project in a `RingBuffer` and writes an ANSI-stripped
copy to `<log_dir>/<project>.log` through a `Rotator`.
`runtime.RuntimeStore` folds events into one `ProjectRuntime` per project;
its `subscribe()` queue holds at most one pending notification.

## Building blocks

```python
from procjuggler.ansi import strip_ansi
from procjuggler.ringbuffer import RingBuffer

strip_ansi("\x1b[31;1merror\x1b[0m: file\x1b[Knot found")
# 'error: filenot found'

ring = RingBuffer(3)
ring.push_many([1, 2, 3, 4, 5])
ring.snapshot()      # [3, 4, 5]
ring.generation()    # 5
```

- `linebuffer.LineBuffer` splits a byte stream into `Line` values: LF and
  CRLF end a line, a bare CR drops the line so far, and over-long lines are
  split on a UTF-8 boundary and marked partial. `ansi.decode_for_render`
  removes cursor and erase escapes but keeps colour codes.
- `rotator.Rotator` appends to a file and rotates it to `.1`, `.2`, … once
  it reaches the size limit, keeping the configured number of backups.
- `restart.Policy` decides after each exit: `Action.NONE`, `Action.RESTART`
  with a delay in seconds taken from the backoff list (the last entry is
  reused), or `Action.GIVE_UP` after the maximum number of attempts. A run
  lasting the reset period clears the attempt counter.
- `terminal.start_pty`, `resize_pty` and `graceful_stop` (SIGTERM to the
  process group, SIGKILL after the grace period).
- `gitinfo.current(directory)` returns a `GitInfo` with branch, ahead/behind
  counts and dirtiness; `branches`, `checkout`, `fetch` and `pull` (fast
  forward only) run the matching git commands and raise `GitError`
  subclasses on failure.
- `netinfo.port_for_pid(pid)` finds the smallest TCP port a process listens
  on (via `/proc` on Linux, `lsof` on macOS), raising `NoPortError` when
  there is none.
- `procstats.Sampler` sums CPU percent and resident memory over a process
  tree; the first sample of a process reports 0.0 CPU.
- `uistore.UIStore` holds selection, log filter, scroll, overlay and toast
  state for a front end.

## What it does not do

There is no command-line program and no terminal user interface: the package
provides the configuration, process supervision, logging and state stores
that such a front end would be built on, and nothing is installed as a
command.

## Requirements

Python 3.10 or newer on Linux or macOS. Process control uses
pseudo-terminals and process groups, and `git` must be on `PATH` for the git
helpers.