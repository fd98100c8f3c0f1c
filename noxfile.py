"""Nox sessions for the image pipeline."""

import nox

PYTHONS = ["3.10", "3.11", "3.12", "3.13"]

nox.options.sessions = ["tests", "lint", "type_check"]
nox.options.default_venv_backend = "uv"


@nox.session(python=PYTHONS)
def tests(session):
    """Run the unit tests. fakeredis and a stubbed boto3 client stand in for the backends."""
    session.install(".[full,dev]")
    session.run("pytest", "tests/unit", "-q", "--no-cov", *session.posargs)


@nox.session(python="3.12")
def coverage(session):
    """Run the unit tests once with the coverage report from pyproject.toml."""
    session.install(".[full,dev]")
    session.run("pytest", "tests/unit", *session.posargs)


@nox.session(python="3.12")
def lint(session):
    session.install("ruff")
    session.run("ruff", "check", "src", "tests", *session.posargs)


@nox.session(python=PYTHONS)
def type_check(session):
    """Run mypy over the package (strict settings live in pyproject.toml)."""
    session.install(".[full,dev]")
    session.run("mypy", "src/image_pipeline", *session.posargs)
