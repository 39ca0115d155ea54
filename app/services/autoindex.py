"""HTML directory listing."""

import html
from typing import Iterable, List
from urllib.parse import quote

from app.models import StorageEntry
from app.services.storage_backend import StorageBackend

PAGE_TEMPLATE = """<!doctype html>
<html lang="en">
    <head>
        <meta charset="utf-8" />
        <title>Index of /{title}</title>
        <style>
            * {
                margin: 0;
                padding: 0;
            }
            table {
                width: 100%;
            }
            a {
                color: #333;
            }
            .size {
                width: 180px;
                text-align: left;
            }
            .lastModified {
                width: 280px;
                text-align: right;
            }
            th, td {
                padding: 10px;
            }
            thead {
                background-color: #f0f0f0;
            }
            tr:nth-child(even) {
                background-color: #f0f0f0;
            }
        </style>
        <script type="text/javascript">
        function updateAllLastModified() {
            Array.from(document.getElementsByClassName("lastModified")).forEach((item) => {
                if (!item.innerHTML) {
                    return;
                }
                const date = new Date(item.innerHTML * 1000);
                if (isFinite(date)) {
                    item.innerHTML = date.toLocaleString();
                }
            });
        }
        document.addEventListener("DOMContentLoaded", () => {
            updateAllLastModified();
        });
        </script>
    </head>
    <body>
        <table border="0" cellpadding="0" cellspacing="0">
            <thead>
                <tr>
                    <th class="name">File Name</th>
                    <th class="size">Size</th>
                    <th class="lastModified">Last Modified</th>
                </tr>
            </thead>
            <tbody>
{rows}
            </tbody>
        </table>
    </body>
</html>
"""

ROW_TEMPLATE = """                <tr>
                    <td class="name"><a href="{target}">{name}</a></td>
                    <td class="size">{size}</td>
                    <td class="lastModified">{last_modified}</td>
                </tr>"""

SIZE_UNITS = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]


def human_readable_size(size: int) -> str:
    """Convert size in bytes to human readable format (binary units)."""
    value = float(size)
    for unit in SIZE_UNITS:
        if value < 1024 or unit == SIZE_UNITS[-1]:
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024


def is_listed(name: str) -> bool:
    """Hidden, empty and single character names are left out of listings."""
    return len(name) > 1 and not name.startswith(".")


def render_rows(entries: Iterable[StorageEntry]) -> List[str]:
    rows = []
    visible = [entry for entry in entries if is_listed(entry.name)]
    for entry in sorted(visible, key=lambda e: (not e.metadata.is_dir, e.name)):
        target = "./" + quote(entry.name)
        size = ""
        last_modified = ""
        if entry.metadata.is_dir:
            target += "/"
        else:
            size = human_readable_size(entry.metadata.size)
            timestamp = entry.metadata.modified_timestamp
            if timestamp is not None:
                last_modified = str(timestamp)
        rows.append(ROW_TEMPLATE.format(
            target=html.escape(target),
            name=html.escape(entry.name),
            size=size,
            last_modified=last_modified,
        ))
    return rows


def render_listing(path: str, entries: Iterable[StorageEntry]) -> str:
    page = PAGE_TEMPLATE.replace("{title}", html.escape(path.strip("/")))
    return page.replace("{rows}", "\n".join(render_rows(entries)))


async def render_autoindex(storage: StorageBackend, path: str) -> bytes:
    """List ``path`` through the backend and render it as an HTML page."""
    entries = await storage.list(path)
    return render_listing(path, entries).encode("utf-8")
