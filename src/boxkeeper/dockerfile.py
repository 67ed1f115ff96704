"""Embedded build definition for the boxkeeper service image.

The Dockerfile is shipped inside the package so `boxkeeper start --cached-rebuild`
works without a checkout. It is assembled from snippets and sent to the engine
as a single-file build context (see images.create_build_context).
"""

from __future__ import annotations

import shlex

from . import __version__
from .constants import COCKPIT_CONTAINER_PORT, CONTAINER_PORT, CONTAINER_WORKDIR, VERSION_LABEL

BASE_IMAGE = "ubuntu:24.04"

# System packages: PAM-backed logins need passwd/login tools; tini reaps children
SYSTEM_PACKAGES = """
RUN apt-get update && apt-get install -y --no-install-recommends \\
    ca-certificates curl git bash sudo tini passwd procps locales \\
    && rm -rf /var/lib/apt/lists/* \\
    && sed -i '/en_US.UTF-8/s/^# //g' /etc/locale.gen && locale-gen

ENV LANG=en_US.UTF-8 LC_ALL=en_US.UTF-8
"""

# Optional admin console; only started when the container boots systemd
COCKPIT_INSTALL = f"""
RUN apt-get update && apt-get install -y --no-install-recommends \\
    systemd systemd-sysv cockpit-ws cockpit-system \\
    && rm -rf /var/lib/apt/lists/* \\
    && systemctl mask systemd-logind.service getty.target console-getty.service

EXPOSE {COCKPIT_CONTAINER_PORT}
"""

# Service user and web UI
SERVICE_INSTALL = f"""
RUN useradd -m -s /bin/bash boxkeeper \\
    && mkdir -p {CONTAINER_WORKDIR} \\
    && chown boxkeeper:boxkeeper {CONTAINER_WORKDIR}

USER boxkeeper
RUN curl -fsSL https://opencode.ai/install | bash
USER root

RUN ln -sf /home/boxkeeper/.opencode/bin/opencode /usr/local/bin/opencode
"""

WEB_UNIT_PATH = "/etc/systemd/system/boxkeeper-web.service"
WEB_UNIT = f"""[Unit]
Description=boxkeeper web UI
After=network.target

[Service]
User=boxkeeper
WorkingDirectory={CONTAINER_WORKDIR}
ExecStart=/usr/local/bin/opencode web --hostname 0.0.0.0 --port {CONTAINER_PORT}
Restart=on-failure

[Install]
WantedBy=multi-user.target
"""

ENTRYPOINT_SCRIPT = f"""#!/bin/bash
set -e
if [ "${{BOXKEEPER_INIT:-tini}}" = "systemd" ]; then
    exec /sbin/init
fi
exec /usr/bin/tini -- sudo -u boxkeeper -H opencode web --hostname 0.0.0.0 --port {CONTAINER_PORT}
"""


def _write_file_step(path: str, content: str, mode: str = "755") -> str:
    """RUN step writing a file line by line (no BuildKit heredocs needed)."""
    quoted = " ".join(shlex.quote(line) for line in content.splitlines())
    return f"RUN printf '%s\\n' {quoted} > {path} && chmod {mode} {path}\n"


def generate_dockerfile(version: str = __version__) -> str:
    """Render the complete Dockerfile.

    Args:
        version: Value for the image version label.
    """
    return "\n".join(
        [
            f"FROM {BASE_IMAGE}",
            f'LABEL {VERSION_LABEL}="{version}"',
            "ENV DEBIAN_FRONTEND=noninteractive",
            SYSTEM_PACKAGES,
            COCKPIT_INSTALL,
            SERVICE_INSTALL,
            _write_file_step("/usr/local/bin/boxkeeper-entrypoint", ENTRYPOINT_SCRIPT),
            _write_file_step(WEB_UNIT_PATH, WEB_UNIT, mode="644"),
            "RUN systemctl enable boxkeeper-web.service cockpit.socket",
            f"WORKDIR {CONTAINER_WORKDIR}",
            f"EXPOSE {CONTAINER_PORT}",
            'ENTRYPOINT ["/usr/local/bin/boxkeeper-entrypoint"]',
            "",
        ]
    )
