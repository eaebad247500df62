"""
A plain WSGI application and a Flask one, for trying forkcorn out.

    forkcorn examples.hello:app --workers 4
    forkcorn examples.hello:flask_app --threads 8
"""

import os

from flask import Flask


def app(environ, start_response):
    body = f"Hello from worker {os.getpid()}!\n".encode("utf-8")
    start_response("200 OK", [
        ("Content-Type", "text/plain"),
        ("Content-Length", str(len(body))),
    ])
    return [body]


flask_app = Flask(__name__)


@flask_app.route("/")
def index():
    return {"message": "Welcome to the homepage", "pid": os.getpid()}


@flask_app.route("/home")
def home():
    return {"message": "Hello from, Flask"}
