# lima

A library for describing QEMU-backed Linux virtual machines and the VDE
networks they attach to. It provides:

- a model of the instance configuration file (`lima.yaml`), with parsing
  from YAML and conversion back to a YAML-shaped mapping;
- default filling, which merges a site-wide `default.yaml` and
  `override.yaml` into an instance configuration;
- validation of a filled-in configuration;
- the `networks.yaml` model for VDE switch and vmnet daemons. It builds
  their start and stop command lines and a matching sudoers fragment;
- small host helpers: user lookups, machine identity, macOS DNS and proxy
  settings, ISO 9660 detection, disk image format detection, directory
  locks and a `{{.Field}}` text template engine.

It runs on Python 3.10 and later and depends only on PyYAML.

## Where things live

All state is kept in the Lima home directory. That is `$LIMA_HOME` when
the variable is set and `~/.lima` otherwise. `lima.dirnames` holds the
paths and file names:

| Path                              | Purpose                              |
|-----------------------------------|--------------------------------------|
| `<home>/_config/default.yaml`     | defaults mixed into every instance   |
| `<home>/_config/override.yaml`    | values forced onto every instance    |
| `<home>/_config/networks.yaml`    | network daemon configuration         |
| `<home>/_networks/`               | network daemon logs                  |
| `<home>/<instance>/lima.yaml`     | configuration of one instance        |

```python
from lima.dirnames import lima_dir, lima_config_dir, lima_networks_dir

print(lima_dir())
print(lima_config_dir())
```

When the home directory exists, `lima_dir()` resolves symlinks in its path.

## Loading and validating an instance configuration

`lima.limayaml.load.load(data, file_path)` parses YAML. It mixes in
`default.yaml` and `override.yaml` from the config directory when they
exist, and fills in every field that is still unset. It does not validate.

```python
from lima.limayaml.load import load
from lima.limayaml.validate import validate, ValidationError

with open("lima.yaml", "rb") as fh:
    y = load(fh.read(), "/abs/path/to/lima.yaml")

print(y.arch, y.cpu_type, y.cpus, y.memory, y.disk)

try:
    validate(y, True)
except ValidationError as err:
    print("invalid configuration:", err)
```

How the values are merged (`lima.limayaml.defaults.fill_default(y, d, o, file_path)`):

- Scalars come from the override if it sets them. Otherwise they come from
  the file, then from the defaults, then from a built-in value: 4 CPUs,
  `4GiB` memory, `100GiB` disk, display `none`, and the host architecture.
- Images, provisioning scripts, probes, port forwards and containerd
  archives are joined with the override entries first, then the file's
  own entries, then the defaults.
- Mounts that share a location, and networks that share an interface name,
  are merged into one entry. The highest priority setting wins.
- DNS servers come from the highest priority source that sets any.
  Environment variables are merged, and the override wins.
- Networks without a MAC address get a stable, locally administered one.
  `mac_address(unique_id)` derives it from the machine ID.

Port forward `guestSocket` and `hostSocket` values are expanded as
templates such as `{{.Home}}`, `{{.Dir}}`, `{{.Name}}`, `{{.UID}}` and
`{{.User}}`. A relative host socket is placed under `<instance>/sock/`.

`lima.limayaml.model.parse_lima_yaml` parses text, bytes or an already
loaded mapping without filling defaults. `LimaYAML.to_dict()` returns a
mapping keyed by the YAML field names. Sizes such as `memory` and `disk`
use binary units:

```python
from lima.limayaml.model import ram_in_bytes

assert ram_in_bytes("4GiB") == 4 * 1024 ** 3
```

## Network daemons

`networks.yaml` lists named networks (`shared`, `host`, `bridged`, ...) and
the paths of the daemons that serve them. `default_config()` returns the
built-in configuration. The command lines can be checked before anything
runs:

```python
from lima.networks import default_config, SWITCH, VMNET

cfg = default_config()
cfg.check("shared")                  # LookupError if the network is not defined
print(cfg.start_cmd("shared", SWITCH))
print(cfg.start_cmd("shared", VMNET))
print(cfg.stop_cmd("shared", VMNET))
print(cfg.pid_file("shared", VMNET), cfg.vde_sock("shared"))
```

`config()` reads `<home>/_config/networks.yaml` and writes the default file
first if there is none. It is supported on macOS only and raises elsewhere.
`sudoers()` renders the sudoers fragment the daemon commands need.
`NetworksConfig.verify_sudo_access` raises when an installed fragment no
longer matches it, unless sudo works without a password.
`NetworksConfig.validate` checks that every configured path is owned by
root and not writable by others.

## Smaller helpers

- `lima.localpathutil.expand` expands `~` and `~/...` into absolute paths.
- `lima.osutil`:
  - `lookup_user` and `lookup_group` look up users and groups;
  - `lima_user()` returns the current user, with the name mapped to `lima`
    when it is not a valid Linux username;
  - `machine_id()` returns a stable host identifier;
  - `dns_addresses()` and `proxy_settings()` read the system network
    settings through `lima.sysprof` on macOS and return empty values
    elsewhere.
- `lima.templateutil.execute(tmpl, args)` renders `{{.Field}}` templates
  from a mapping or an object and returns bytes. It raises `TemplateError`
  on unsupported actions.
- `lima.iso9660util.is_iso9660(path)` tells whether a file is an ISO 9660
  image.
- `lima.imgutil.detect_format(path)` gives the disk image format. It goes
  by the `.qcow2` or `.raw` extension, and otherwise runs
  `qemu-img info --output=json`.
- `lima.lockutil.dir_lock(path)` is a context manager that holds an
  exclusive `flock` on a directory.

## What this package does not do

It has no command-line program. It does not start, stop or inspect virtual
machines, and it keeps no list of instances or their running status. It
does not build SSH options or manage SSH keys. It does not start or stop
the network daemons itself: it only produces their command lines and
sudoers entries.

## Running the tests

The `test` extra installs pytest. The tests live in `tests/`.