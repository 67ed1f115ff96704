"""Tests for the embedded Dockerfile."""

from __future__ import annotations

from boxkeeper import __version__
from boxkeeper.dockerfile import generate_dockerfile


class TestGenerateDockerfile:
    def test_starts_from_base_and_labels_version(self) -> None:
        dockerfile = generate_dockerfile()
        assert dockerfile.startswith("FROM ubuntu:24.04\n")
        assert f'LABEL org.boxkeeper.version="{__version__}"' in dockerfile

    def test_custom_version_label(self) -> None:
        assert 'org.boxkeeper.version="9.9.9"' in generate_dockerfile("9.9.9")

    def test_exposes_service_port_and_entrypoint(self) -> None:
        dockerfile = generate_dockerfile()
        assert "EXPOSE 3000" in dockerfile
        assert "EXPOSE 9090" in dockerfile
        assert 'ENTRYPOINT ["/usr/local/bin/boxkeeper-entrypoint"]' in dockerfile

    def test_entrypoint_switches_on_init_variable(self) -> None:
        dockerfile = generate_dockerfile()
        assert "BOXKEEPER_INIT" in dockerfile
        assert "/sbin/init" in dockerfile

    def test_no_heredocs(self) -> None:
        assert "<<" not in generate_dockerfile()
