"""Shell snippets and files installed into the subsystem guest."""

from __future__ import annotations

import textwrap
from typing import Dict, Mapping

ENTERNS_PATH = "/usr/local/bin/machine-enterns"
BOOTSTRAP_PATH = "/root/bootstrap"
USER_MODE_GATEWAY = "192.168.127.1"
GUEST_PACKAGES = ("podman", "podman-docker", "openssh-server", "procps-ng")
PROXY_VARIABLES = ("HTTP_PROXY", "HTTPS_PROXY", "NO_PROXY", "http_proxy", "https_proxy", "no_proxy")

# Prints the PID of the nested systemd, empty when it is not up.
SYSDPID = "SYSDPID=`ps -eo cmd,pid | grep -m 1 ^/lib/systemd/systemd | awk '{print $2}'`"

CONTAINERS_CONF = textwrap.dedent(
    """\
    [containers]
    netns="slirp4netns"

    [engine]
    cgroup_manager = "cgroupfs"
    events_logger = "file"
    """
)

SUDOERS = "%wheel        ALL=(ALL)       NOPASSWD: ALL\n"

BOOTSTRAP = textwrap.dedent(
    """\
    #!/bin/bash
    ps -ef | grep -v grep | grep -q systemd && exit 0
    nohup unshare --kill-child --fork --pid --mount --mount-proc --propagation shared /lib/systemd/systemd >/dev/null 2>&1 &
    sleep 0.1
    """
)

WSL_MOTD = textwrap.dedent(
    """
    You will be automatically entered into a nested process namespace where
    systemd is running. If you need to access the root namespace, hit ctrl-d
    or type exit. This also means to log out you need to exit twice.

    """
)

PROFILE = SYSDPID + textwrap.dedent(
    f"""
    if [ ! -z "$SYSDPID" ] && [ "$SYSDPID" != "1" ]; then
        cat /etc/wslmotd
        {ENTERNS_PATH}
    fi
    """
)

ENTERNS = "#!/bin/bash\n" + SYSDPID + textwrap.dedent(
    """
    if [ ! -z "$SYSDPID" ] && [ "$SYSDPID" != "1" ]; then
        nsenter -m -p -t $SYSDPID "$@"
    fi
    """
)

# Blocks until the nested systemd exits, at most 60 seconds.
WAIT_TERM = SYSDPID + textwrap.dedent(
    """
    if [ ! -z "$SYSDPID" ]; then
        timeout 60 tail -f /dev/null --pid $SYSDPID
    fi
    """
)

PROBE_SYSTEMD = SYSDPID + "\necho $SYSDPID\n"

# The subsystem kernel lacks the sg and crypto_user modules.
OVERRIDE_SYSUSERS = "[Service]\nLoadCredential=\n"

LINGER_SERVICE = textwrap.dedent(
    """\
    [Unit]
    Description=Keeps the user session and its podman socket alive
    After=network-online.target
    Wants=network-online.target podman.socket
    [Service]
    ExecStart=/usr/bin/sleep infinity
    """
)


def append_port(port: int) -> str:
    return f"grep -q 'Port {port}' /etc/ssh/sshd_config || echo 'Port {port}' >> /etc/ssh/sshd_config"


def configure_services(user: str) -> str:
    return textwrap.dedent(
        f"""\
        ln -fs /usr/lib/systemd/system/sshd.service /etc/systemd/system/multi-user.target.wants/sshd.service
        ln -fs /usr/lib/systemd/system/podman.socket /etc/systemd/system/sockets.target.wants/podman.socket
        rm -f /etc/systemd/system/getty.target.wants/console-getty.service
        rm -f /etc/systemd/system/getty.target.wants/getty@tty1.service
        rm -f /etc/systemd/system/multi-user.target.wants/systemd-resolved.service
        rm -f /etc/systemd/system/dbus-org.freedesktop.resolve1.service
        ln -fs /dev/null /etc/systemd/system/console-getty.service
        mkdir -p /etc/systemd/system/systemd-sysusers.service.d/
        id -u {user} >/dev/null 2>&1 || adduser -m {user} -G wheel
        mkdir -p /home/{user}/.config/systemd/user/
        chown {user}:{user} /home/{user}/.config
        """
    )


def linger_setup(user: str) -> str:
    return textwrap.dedent(
        f"""\
        mkdir -p /home/{user}/.config/systemd/user/default.target.wants
        ln -fs /home/{user}/.config/systemd/user/linger-keepalive.service \\
               /home/{user}/.config/systemd/user/default.target.wants/linger-keepalive.service
        """
    )


def authorized_keys_command(home: str, owner: str) -> str:
    chown = f"chown -R {owner}:{owner} {home}/.ssh; " if owner != "root" else ""
    return (
        f"mkdir -p {home}/.ssh; cat >> {home}/.ssh/authorized_keys; "
        f"{chown}chmod 600 {home}/.ssh/authorized_keys"
    )


def wsl_conf(user: str, user_mode_networking: bool) -> str:
    content = f"[user]\ndefault={user}\n"
    if user_mode_networking:
        content += "\n[network]\ngenerateResolvConf = false\n"
    return content


def user_mode_resolv_conf() -> str:
    return f"nameserver {USER_MODE_GATEWAY}\n"


def proxy_settings(env: Mapping[str, str]) -> Dict[str, str]:
    return {name: env[name] for name in PROXY_VARIABLES if env.get(name)}


def proxy_profile(settings: Mapping[str, str]) -> str:
    return "".join(f"export {name}=\"{value}\"\n" for name, value in sorted(settings.items()))


def proxy_systemd_conf(settings: Mapping[str, str]) -> str:
    lines = "".join(f"DefaultEnvironment=\"{name}={value}\"\n" for name, value in sorted(settings.items()))
    return "[Manager]\n" + lines
