#!/usr/bin/env python3
"""
A single-file personal homepage: markdown pages and a link collection,
read from SQLite and rendered server-side.
"""

import logging
import os
import re
import sqlite3
from datetime import datetime
from enum import Enum
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from urllib.parse import urlparse

import click
import markdown
from flask import Flask, g, render_template_string
from markupsafe import Markup
from werkzeug.middleware.proxy_fix import ProxyFix

################################################################################
# Imports & constants
################################################################################

DEFAULT_DATABASE = "db/db.sqlite"
DEFAULT_HOST = "0.0.0.0"  # ":8080", every interface
DEFAULT_PORT = 8080

DB_FILE = Path(os.environ.get("HOMEPAGE_DATABASE", DEFAULT_DATABASE))
HOST = os.environ.get("HOMEPAGE_HOST", DEFAULT_HOST)
PORT = int(os.environ.get("HOMEPAGE_PORT", DEFAULT_PORT))
SITE_NAME = os.environ.get("HOMEPAGE_SITE_NAME", "Homepage")

# every page belongs to this account; there is no login
OWNER_ID = 1

MODIFIED_FMT = "{:04d}-{:02d}-{:02d} {:02d}:{:02d}h"
ZERO_TIME = datetime.min
RFC3339_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2})T(\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})$"
)
# link URLs with any other scheme never reach an href
WEB_SCHEMES = {"", "http", "https"}

try:
    __version__ = version("homepage")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


class PageKind(Enum):
    """Entry types that have a route of their own."""

    HOME = "maincontent"
    PRIVACY_POLICY = "privacypolicy"


class UnsanitizedHtml(Markup):
    """
    Markdown output that Jinja must not escape again.

    Nothing strips scripts or event handlers from it, so only wrap text
    written by the site owner.
    """


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.config.update(
    DATABASE=str(DB_FILE),
    HOST=HOST,
    PORT=PORT,
    SITE_NAME=SITE_NAME,
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
app.logger.setLevel(logging.INFO)

MD_EXTENSION_CONFIGS = {
    "pymdownx.highlight": {
        "guess_lang": False,
        "noclasses": True,
        "pygments_style": "nord",
    },
}
MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.superfences",
    "pymdownx.highlight",
    "pymdownx.saneheaders",
]


def _markdown_renderer():
    return markdown.Markdown(
        extensions=MD_EXTENSIONS,
        extension_configs=MD_EXTENSION_CONFIGS,
    )


def render_markdown(text: str | None) -> UnsanitizedHtml:
    """
    Convert Markdown to HTML.  The output is *not* sanitized.
    """
    # Markdown instances keep state between calls, so one per render
    return UnsanitizedHtml(_markdown_renderer().convert(text or ""))


def format_modified(value: str | None) -> str:
    """
    RFC 3339 timestamp → ``YYYY-MM-DD HH:MMh`` in its own offset.

    Anything that does not parse renders as the zero time
    (``0001-01-01 00:00h``).
    """
    dt = ZERO_TIME
    m = RFC3339_RE.match(value or "")
    if m:
        day, clock, frac, offset = m.groups()
        frac = f".{frac[:6].ljust(6, '0')}" if frac else ""
        if offset == "Z":
            offset = "+00:00"
        try:
            dt = datetime.fromisoformat(f"{day}T{clock}{frac}{offset}")
        except ValueError:
            dt = ZERO_TIME
    # four-digit year even for the zero time
    return MODIFIED_FMT.format(dt.year, dt.month, dt.day, dt.hour, dt.minute)


def _web_url(url: str | None) -> bool:
    """True for http(s) and scheme-less URLs."""
    if not url:
        return False
    try:
        scheme = urlparse(url.strip()).scheme
    except ValueError:
        return False
    return scheme.lower() in WEB_SCHEMES


def safe_href(url: str | None) -> str:
    """The URL itself when it is safe to put in ``href``, ``#`` otherwise."""
    return url.strip() if _web_url(url) else "#"


def link_host(url: str | None) -> str:
    """Return the hostname (sans www) for display next to external links."""
    if not _web_url(url):
        return ""
    url = url.strip()
    try:
        parsed = urlparse(url if "://" in url else f"//{url}", scheme="https")
        host = parsed.netloc
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host.lower()


app.jinja_env.globals.update(
    link_host=link_host,
    safe_href=safe_href,
    version=__version__,
)


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    """Create the tables if they are missing.  Never touches existing rows."""
    db = get_db()
    db.executescript(
        """
        CREATE TABLE IF NOT EXISTS entries (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id     INTEGER NOT NULL,
            type        TEXT    NOT NULL,
            created_at  TEXT    NOT NULL,
            modified_at TEXT    NOT NULL,
            title       TEXT    NOT NULL DEFAULT '',
            content     TEXT    NOT NULL DEFAULT '',
            private     INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS link_categories (
            id   INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS links (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id     INTEGER NOT NULL,
            created_at  TEXT    NOT NULL,
            modified_at TEXT    NOT NULL,
            title       TEXT    NOT NULL,
            url         TEXT    NOT NULL,
            comment     TEXT    NOT NULL DEFAULT '',
            category_id INTEGER REFERENCES link_categories(id)
        );

        CREATE INDEX IF NOT EXISTS idx_entries_type ON entries(type, user_id);
        CREATE INDEX IF NOT EXISTS idx_links_category ON links(category_id);
        """
    )
    db.commit()


def fetch_entry(kind: PageKind, *, db):
    """The public entry of *kind* for the site owner, or ``None``."""
    if not isinstance(kind, PageKind):
        raise TypeError(f"expected PageKind, got {kind!r}")
    return db.execute(
        "SELECT * FROM entries WHERE type = ? AND user_id = ? AND private = 0",
        (kind.value, OWNER_ID),
    ).fetchone()


def fetch_link_categories(*, db) -> list[dict]:
    """
    All categories A-Z, each with a ``links`` list sorted by title.
    """
    categories = [
        dict(row)
        for row in db.execute("SELECT * FROM link_categories ORDER BY name ASC")
    ]
    for cat in categories:
        cat["links"] = db.execute(
            "SELECT * FROM links WHERE category_id = ? ORDER BY title ASC",
            (cat["id"],),
        ).fetchall()
    return categories


###############################################################################
# CLI
###############################################################################
@app.cli.command("init-db")
def cli_init_db():
    """Create the entries / links / link_categories tables."""
    init_db()
    click.secho(f"\n✅  Database ready at {app.config['DATABASE']}", fg="green")


###############################################################################
# Templates + Views
###############################################################################
def render_page(fragment: str, *, title: str | None = None, **context) -> str:
    """
    Render *fragment* first, then drop its HTML into the base layout.

    The fragment output is marked safe, so whatever the fragment let
    through (markdown HTML included) reaches the page as is.
    """
    body = render_template_string(fragment, title=title, **context)
    return render_template_string(
        TEMPL_BASE,
        title=title,
        site_name=app.config["SITE_NAME"],
        content=Markup(body),
    )


TEMPL_BASE = """
<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{% if title %}{{ title }} – {% endif %}{{ site_name }}</title>
<link rel="stylesheet" href="{{ url_for('static', filename='style.css') }}">
</head>
<body>
<header class="site-header">
    <a class="site-name" href="{{ url_for('index') }}">{{ site_name }}</a>
    <nav aria-label="Primary">
        <a href="{{ url_for('index') }}"
        {% if request.endpoint == 'index' %}aria-current="page"{% endif %}>Home</a>
        <a href="{{ url_for('links') }}"
        {% if request.endpoint == 'links' %}aria-current="page"{% endif %}>Links</a>
    </nav>
</header>
<main id="main-content">
{{ content }}
</main>
<footer class="site-footer">
    <a href="{{ url_for('privacy_policy') }}"
    {% if request.endpoint == 'privacy_policy' %}aria-current="page"{% endif %}>Privacy policy</a>
    <span class="version">v{{ version }}</span>
</footer>
</body>
</html>
"""


TEMPL_ENTRY = """
<article class="entry">
  <h1 class="entry-title">{{ title }}</h1>
  <div class="entry-content">{{ content }}</div>
  <p class="entry-meta">Last modified: <time>{{ modified_at }}</time></p>
</article>
"""


TEMPL_LINKS = """
<h1>Links</h1>
{% for cat in categories %}
<section class="link-category">
  <h2>{{ cat['name'] }}</h2>
  <ul>
  {% for l in cat['links'] %}
    <li>
      <a href="{{ safe_href(l['url']) }}" rel="noopener">{{ l['title'] }}</a>
      {% set host = link_host(l['url']) %}
      {% if host %}<span class="link-host">({{ host }})</span>{% endif %}
      {% if l['comment'] %}<p class="link-comment">{{ l['comment'] }}</p>{% endif %}
    </li>
  {% endfor %}
  </ul>
</section>
{% endfor %}
"""


def render_entry_page(kind: PageKind) -> str:
    """
    Look up the entry for *kind* and render it inside the base layout.

    A missing row or a database error is logged and answered with an
    empty 200.
    """
    try:
        entry = fetch_entry(kind, db=get_db())
    except sqlite3.Error:
        app.logger.exception("Loading the %s entry failed", kind.value)
        return ""

    if entry is None:
        app.logger.info("No entry found for type %s", kind.value)
        return ""

    return render_page(
        TEMPL_ENTRY,
        title=entry["title"],
        content=render_markdown(entry["content"]),
        modified_at=format_modified(entry["modified_at"]),
    )


@app.route("/")
def index():
    return render_entry_page(PageKind.HOME)


@app.route("/privacypolicy")
def privacy_policy():
    return render_entry_page(PageKind.PRIVACY_POLICY)


@app.route("/links")
def links():
    """Every link category with its links."""
    try:
        categories = fetch_link_categories(db=get_db())
    except sqlite3.Error:
        app.logger.exception("Loading link categories failed")
        return ""
    return render_page(TEMPL_LINKS, title="Links", categories=categories)


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(host=app.config["HOST"], port=app.config["PORT"])
