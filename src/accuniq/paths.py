"""Where config and database files live.

  Dev:        ./accuniq.toml                    -> ./data/accuniq.db
  Per user:   ~/.config/accuniq/accuniq.toml    -> ~/.local/share/accuniq/accuniq.db
  System:     /etc/accuniq/accuniq.toml         -> /var/lib/accuniq/accuniq.db
"""

import os

USER_CONFIG_DIR = "~/.config/accuniq"
USER_DATA_DIR = "~/.local/share/accuniq"
ETC_DIR = "/etc/accuniq"
VAR_DIR = "/var/lib/accuniq"


def _config_dirs() -> list[tuple[str, str]]:
    """(config dir, data dir) pairs, in search order after the cwd."""
    return [
        (os.path.expanduser(USER_CONFIG_DIR), os.path.expanduser(USER_DATA_DIR)),
        (ETC_DIR, VAR_DIR),
    ]


def resolve_config(name: str) -> str:
    """Return the absolute path of config *name*.

    Paths with a ``/`` must exist as given.  Bare names are tried in the
    current directory, the user config directory and ``/etc/accuniq``.

    Raises:
        FileNotFoundError: If no candidate exists.
    """
    if "/" in name:
        path = os.path.abspath(name)
        if not os.path.isfile(path):
            raise FileNotFoundError("config file not found: %s" % path)
        return path

    tried = [os.getcwd()]
    local = os.path.abspath(name)
    if os.path.isfile(local):
        return local
    for config_dir, _ in _config_dirs():
        tried.append(config_dir)
        path = os.path.join(config_dir, name)
        if os.path.isfile(path):
            return os.path.abspath(path)

    raise FileNotFoundError(
        "config file '%s' not found in %s" % (name, ", ".join(tried))
    )


def resolve_db(config_path: str, db_name: str) -> str:
    """Place *db_name* in the data directory paired with the config.

    Absolute names and ``:memory:`` are returned unchanged.  A config
    anywhere else gets a ``data/`` directory beside it.
    """
    if os.path.isabs(db_name) or db_name == ":memory:":
        return db_name
    config_dir = os.path.dirname(os.path.abspath(config_path))
    for known_dir, data_dir in _config_dirs():
        if config_dir == os.path.abspath(known_dir):
            return os.path.join(data_dir, db_name)
    return os.path.join(config_dir, "data", db_name)


def find_db(db_name: str) -> str:
    """Return the first existing database for the panel.

    Looks in ``./data``, then each known data directory; with none
    present the system path is returned so the error names it.
    """
    local = os.path.join("data", db_name)
    if os.path.isfile(local):
        return os.path.abspath(local)
    for _, data_dir in _config_dirs():
        path = os.path.join(data_dir, db_name)
        if os.path.isfile(path):
            return path
    return os.path.join(VAR_DIR, db_name)
