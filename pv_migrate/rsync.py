from dataclasses import dataclass

from pv_migrate.errors import CommandError

DEFAULT_SSH_USER = "root"

SSH_OPTIONS = [
    "ssh",
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "ConnectTimeout=5",
]


@dataclass
class RsyncCommand:
    """
    Builds the one-line rsync invocation run inside the migration pods.

    At most one side may be reached over SSH. ``--no-inc-recursive`` keeps the
    ``progress2`` total stable so the progress bar can follow it.
    """

    src_path: str
    dest_path: str
    src_use_ssh: bool = False
    dest_use_ssh: bool = False
    src_ssh_host: str = ""
    src_ssh_user: str = ""
    dest_ssh_host: str = ""
    dest_ssh_user: str = ""
    port: int = 0
    no_chown: bool = False
    delete: bool = False
    compress: bool = False
    command: str = "rsync"

    def build(self):
        if self.src_use_ssh and self.dest_use_ssh:
            raise CommandError("cannot use ssh on both source and destination")

        ssh_args = list(SSH_OPTIONS)
        if self.port:
            ssh_args += ["-p", str(self.port)]

        args = [
            "-av",
            "--info=progress2,misc0,flist0",
            "--no-inc-recursive",
            "-e", '"' + " ".join(ssh_args) + '"',
        ]
        if self.compress:
            args.append("-z")
        if self.no_chown:
            args += ["--no-o", "--no-g"]
        if self.delete:
            args.append("--delete")

        src = _endpoint(self.src_use_ssh, self.src_ssh_user, self.src_ssh_host, self.src_path)
        dest = _endpoint(self.dest_use_ssh, self.dest_ssh_user, self.dest_ssh_host, self.dest_path)

        return f"{self.command} {' '.join(args)} {src} {dest}"


def _endpoint(use_ssh, user, host, path):
    if not use_ssh:
        return path
    return f"{user or DEFAULT_SSH_USER}@{host}:{path}"
