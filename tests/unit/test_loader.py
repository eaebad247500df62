"""
Unit tests for load_app.
"""

import sys
import textwrap

import pytest

from forkcorn.loader import load_app


@pytest.fixture
def app_module(tmp_path, monkeypatch):
    """Write a throwaway module and make it importable."""
    source = textwrap.dedent("""
        def app(environ, start_response):
            start_response("200 OK", [])
            return [b"ok"]

        def create_app():
            return app

        class FlaskLike:
            def wsgi_app(self, environ, start_response):
                return app(environ, start_response)

        flask_like = FlaskLike()
        not_callable = 42
    """)
    name = "forkcorn_test_app_module"
    (tmp_path / f"{name}.py").write_text(source)
    monkeypatch.syspath_prepend(str(tmp_path))
    yield name
    sys.modules.pop(name, None)


def test_loads_attribute(app_module):
    app = load_app(f"{app_module}:app")

    assert app.__name__ == "app"


def test_calls_factory(app_module):
    app = load_app(f"{app_module}:create_app()")

    assert app.__name__ == "app"


def test_unwraps_wsgi_app(app_module):
    app = load_app(f"{app_module}:flask_like")

    assert app.__name__ == "wsgi_app"


@pytest.mark.parametrize("path, error", [
    ("no_colon_here", ValueError),
    (":app", ValueError),
    ("forkcorn_missing_module_xyz:app", ImportError),
])
def test_bad_paths(path, error):
    with pytest.raises(error):
        load_app(path)


def test_missing_attribute(app_module):
    with pytest.raises(AttributeError):
        load_app(f"{app_module}:nope")


def test_not_callable(app_module):
    with pytest.raises(TypeError):
        load_app(f"{app_module}:not_callable")


def test_example_apps_load_and_serve():
    pytest.importorskip("flask")
    from conftest import exchange
    from forkcorn.response import parse_response

    plain = load_app("examples.hello:app")
    flask_view = load_app("examples.hello:flask_app")

    status, headers, body = parse_response(exchange(plain, b"GET / HTTP/1.1\r\n\r\n"))
    assert status == "200 OK"
    assert body.startswith(b"Hello from worker ")
    assert ("Content-Length", str(len(body))) in headers

    status, _, body = parse_response(exchange(flask_view, b"GET /home HTTP/1.1\r\n\r\n"))
    assert status == "200 OK"
    assert b"Hello from, Flask" in body
