import nox

nox.needs_version = ">=2024.4.15"
nox.options.default_venv_backend = "uv|virtualenv"


@nox.session
@nox.parametrize("editable", [True, False])
def tests(session: nox.Session, editable: bool) -> None:
    session.install("-e.[test]" if editable else ".[test]")
    session.run("pytest", "--timeout=30", "tests", *session.posargs)


@nox.session
def imports(session: nox.Session) -> None:
    session.install(".")
    # The package must import without the test extras installed.
    session.run("python", "-c", "import conn_adapter; conn_adapter.SocketAdapter; conn_adapter.RecordingAdapter")
