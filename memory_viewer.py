#!/usr/bin/env python3
"""Browser view of stored memories and remote sync state."""

from __future__ import annotations

from flask import Flask, render_template_string, request

import memory_store
import storage
from vector_sync import HYDRATE, SYNC

app = Flask(__name__)
ITEMS_PER_PAGE = 10


def get_page_links(current: int, total: int) -> list:
    """Generate smart pagination links with ellipsis for gaps."""
    if total <= 7:
        return list(range(1, total + 1))

    links = []
    for p in range(1, total + 1):
        show_page = (
            p <= 3  # First 3 pages
            or p >= total - 2  # Last 3 pages
            or abs(p - current) <= 1  # Pages around current
        )
        if show_page:
            links.append(p)
        elif links[-1] != "...":
            links.append("...")
    return links


HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>RAG Chat Memories</title>
    <style>
        body { font-family: system-ui; max-width: 900px; margin: 0 auto; padding: 20px; background: #1a1a2e; color: #eee; }
        h1 { color: #00d9ff; }
        .header { display: flex; justify-content: space-between; align-items: center; margin-bottom: 20px; flex-wrap: wrap; gap: 10px; }
        .pagination { display: flex; gap: 6px; align-items: center; flex-wrap: wrap; }
        .pagination a, .pagination span { padding: 6px 12px; background: #0f3460; color: #00d9ff; text-decoration: none; border-radius: 5px; display: inline-block; }
        .pagination a:hover { background: #16213e; }
        .pagination span.current { background: #00d9ff; color: #1a1a2e; font-weight: bold; }
        .pagination span.ellipsis { color: #888; background: transparent; }
        .pagination a.disabled { color: #666; pointer-events: none; }
        .sync { background: #16213e; padding: 10px 15px; border-radius: 8px; font-size: 13px; color: #bbb; }
        .memory { background: #16213e; padding: 15px; margin: 10px 0; border-radius: 8px; border-left: 4px solid #00d9ff; }
        .type { display: inline-block; padding: 2px 8px; border-radius: 4px; font-size: 12px; font-weight: bold; }
        .prompt { background: #4a90d9; }
        .response { background: #1abc9c; }
        .meta { color: #888; font-size: 12px; margin-top: 8px; }
        .search { margin-bottom: 20px; }
        input { padding: 10px; width: 100%; border-radius: 5px; border: none; background: #0f3460; color: #fff; }
    </style>
</head>
<body>
    <div class="header">
        <h1>RAG Chat Memories</h1>
        <div class="pagination">
            {% if page > 1 %}
            <a href="/?page={{ page-1 }}">← Prev</a>
            {% else %}
            <a class="disabled">← Prev</a>
            {% endif %}

            {% for p in page_links %}
            {% if p == "..." %}
            <span class="ellipsis">...</span>
            {% elif p == page %}
            <span class="current">{{ p }}</span>
            {% else %}
            <a href="/?page={{ p }}">{{ p }}</a>
            {% endif %}
            {% endfor %}

            {% if page < total_pages %}
            <a href="/?page={{ page+1 }}">Next →</a>
            {% else %}
            <a class="disabled">Next →</a>
            {% endif %}
        </div>
    </div>
    <div class="sync">
        {% if sync.active_index_name %}
        Remote archive: {{ sync.active_index_name }} / {{ sync.namespace }}
        ({{ "enabled" if sync.is_enabled else "disabled" }}){% if sync.last_sync_timestamp %}, last run {{ sync.last_sync_timestamp[:19] }}{% endif %}
        {% else %}
        Remote archive: not configured
        {% endif %}
        {% if last_sync %}<br>Last sync: {{ last_sync.count }} new, {{ last_sync.duplicate_count }} duplicate ({{ last_sync.dedup_rate }}%){% endif %}
        {% if last_hydrate %}<br>Last hydrate: {{ last_hydrate.count }} new, {{ last_hydrate.duplicate_count }} duplicate ({{ last_hydrate.dedup_rate }}%){% endif %}
    </div>
    <p>{{ total_memories }} memories total</p>
    <div class="search">
        <input type="text" id="search" placeholder="Search memories..." onkeyup="filterMemories()">
    </div>
    <div id="memories">
        {% for m in memories %}
        <div class="memory" data-content="{{ m.content|lower }}">
            <span class="type {{ m.type }}">{{ m.type }}</span>
            <p>{{ m.content }}</p>
            <div class="meta">#{{ m.id }}{% if m.message_id %} | message {{ m.message_id }}{% endif %} | {{ m.timestamp[:19] }}</div>
        </div>
        {% endfor %}
    </div>
    <script>
        function filterMemories() {
            const q = document.getElementById('search').value.toLowerCase();
            document.querySelectorAll('.memory').forEach(el => {
                el.style.display = el.dataset.content.includes(q) ? 'block' : 'none';
            });
        }
    </script>
</body>
</html>
"""


@app.route("/")
def index():
    try:
        page = max(1, int(request.args.get("page", 1)))
    except ValueError:
        page = 1
    memories, total = memory_store.list_memories(page, ITEMS_PER_PAGE)
    total_pages = (total + ITEMS_PER_PAGE - 1) // ITEMS_PER_PAGE
    page_links = get_page_links(page, total_pages)

    return render_template_string(
        HTML,
        memories=memories,
        page=page,
        total_pages=total_pages,
        total_memories=total,
        page_links=page_links,
        sync=storage.get_sync_state(),
        last_sync=storage.latest_sync_history(SYNC),
        last_hydrate=storage.latest_sync_history(HYDRATE),
    )


def main():
    print("Open http://localhost:5000 in your browser")
    app.run(port=5000)


if __name__ == "__main__":
    main()
