"""Static catalog of UI block types served by ``get_block_spec``.

Kept out of the system prompt; the LLM fetches one spec at a time before
generating a block of that type.
"""

import json
from typing import Any, NamedTuple


class BlockSpec(NamedTuple):
    title: str
    config: tuple[str, ...]
    example: dict[str, Any]
    data_source: tuple[str, ...] = ()


BLOCK_SPECS: dict[str, BlockSpec] = {
    "stats_card": BlockSpec(
        title="KPI metric card",
        config=(
            "label (string, required): display label",
            "value_key (string, required): key of the aggregation result to show",
            'format (string): "number" | "currency" | "percent"',
            'color (string): "blue" | "green" | "amber" | "red"',
            "icon (string): Lucide icon name",
        ),
        data_source=(
            "table (string, required)",
            'aggregation (array, required): [{"function": "count|sum|avg", "column": "*|col", "alias": "key"}]',
            "where (string): SQL filter",
        ),
        example={
            "id": "stat_active_users",
            "type": "stats_card",
            "config": {"label": "Active Users", "value_key": "count", "format": "number", "color": "green"},
            "data_source": {
                "table": "users",
                "aggregation": [{"function": "count", "column": "*", "alias": "count"}],
                "where": "status = 'active'",
            },
        },
    ),
    "data_table": BlockSpec(
        title="Full CRUD data table",
        config=(
            "table_name (string, required)",
            'columns (array, required): [{key, label, type: "text|number|date|boolean|badge|lookup", sortable}]',
            "lookup columns add lookup_table, lookup_key and display_key",
            'actions (array): any of "create", "edit", "delete", "view"',
            "search_enabled, pagination, filters_enabled (boolean); page_size (number, default 20)",
            'row_click_action (object): {"type": "navigate", "page_id": ..., "params": {"record_id": "id"}}',
            "status_actions (array): [{label, from_status[], to_status, status_column, color, confirm}]",
        ),
        data_source=(
            "table (string, required): same as config.table_name",
            'order_by (array): [{"column": "created_at", "direction": "DESC"}]',
            "where (string), limit (number)",
        ),
        example={
            "id": "table_orders",
            "type": "data_table",
            "config": {
                "table_name": "orders",
                "columns": [
                    {"key": "id", "label": "ID", "type": "number"},
                    {"key": "customer_name", "label": "Customer", "sortable": True},
                    {"key": "status", "label": "Status", "type": "badge"},
                ],
                "actions": ["create", "edit", "delete"],
                "search_enabled": True,
                "pagination": True,
            },
            "data_source": {"table": "orders", "order_by": [{"column": "id", "direction": "DESC"}]},
        },
    ),
    "form": BlockSpec(
        title="Inline form that inserts a row",
        config=(
            "table_name (string, required)",
            'fields (array, required): [{name, label, type: "text|number|email|textarea|select|checkbox|date", required, options}]',
            "submit_label (string)",
            'mode (string): "create" | "edit"',
        ),
        example={
            "id": "form_new_order",
            "type": "form",
            "config": {
                "table_name": "orders",
                "fields": [
                    {"name": "customer_name", "label": "Customer", "type": "text", "required": True},
                    {"name": "status", "label": "Status", "type": "select", "options": ["pending", "shipped"]},
                ],
                "submit_label": "Create Order",
            },
        },
    ),
    "chart": BlockSpec(
        title="Bar, line, pie or area chart",
        config=(
            'chart_type (string, required): "bar" | "line" | "pie" | "area"',
            "x_key (string, required), y_key (string, required)",
            "title (string), color (string)",
        ),
        data_source=(
            "table (string, required)",
            'aggregation (array): [{"function": "sum", "column": "amount", "alias": "total"}]',
            "group_by (array of strings)",
        ),
        example={
            "id": "chart_revenue",
            "type": "chart",
            "config": {"chart_type": "bar", "x_key": "month", "y_key": "total", "title": "Revenue"},
            "data_source": {
                "table": "orders",
                "aggregation": [{"function": "sum", "column": "total_amount", "alias": "total"}],
                "group_by": ["month"],
            },
        },
    ),
    "detail_view": BlockSpec(
        title="Single record detail",
        config=(
            "table_name (string, required)",
            "record_id_param (string): URL param holding the record id",
            "fields (array, required): [{key, label, type}]",
        ),
        example={
            "id": "order_detail",
            "type": "detail_view",
            "config": {
                "table_name": "orders",
                "record_id_param": "record_id",
                "fields": [{"key": "id", "label": "ID"}, {"key": "status", "label": "Status", "type": "badge"}],
            },
        },
    ),
    "markdown": BlockSpec(
        title="Static rich text",
        config=("content (string, required): markdown source",),
        example={"id": "intro", "type": "markdown", "config": {"content": "## Welcome\nTrack your orders here."}},
    ),
    "image": BlockSpec(
        title="Image",
        config=("src (string, required)", "alt (string)", 'fit (string): "cover" | "contain"'),
        example={"id": "banner", "type": "image", "config": {"src": "https://example.com/a.png", "alt": "Banner"}},
    ),
    "hero": BlockSpec(
        title="Landing hero section",
        config=(
            "title (string, required)",
            "subtitle (string)",
            "cta_label (string), cta_page_id (string)",
            "background_image (string)",
        ),
        example={
            "id": "hero_home",
            "type": "hero",
            "config": {"title": "Inventory", "subtitle": "Everything in stock", "cta_label": "Browse", "cta_page_id": "items"},
        },
    ),
    "tabs_container": BlockSpec(
        title="Tabs holding nested blocks",
        config=(
            "tabs (array, required): [{id, label, blocks[]}]",
            "nested blocks use the same structure as top-level blocks",
        ),
        example={
            "id": "order_tabs",
            "type": "tabs_container",
            "config": {
                "tabs": [
                    {
                        "id": "tab_all",
                        "label": "All",
                        "blocks": [
                            {
                                "id": "table_all",
                                "type": "data_table",
                                "config": {"table_name": "orders", "columns": [{"key": "id", "label": "ID"}]},
                            }
                        ],
                    }
                ]
            },
        },
    ),
    "list": BlockSpec(
        title="Compact list of records",
        config=("table_name (string, required)", "title_key (string, required)", "subtitle_key (string)"),
        data_source=("table (string, required)", "limit (number)"),
        example={
            "id": "recent_orders",
            "type": "list",
            "config": {"table_name": "orders", "title_key": "customer_name", "subtitle_key": "status"},
            "data_source": {"table": "orders", "limit": 5},
        },
    ),
    "divider": BlockSpec(
        title="Horizontal separator",
        config=("label (string)",),
        example={"id": "sep_1", "type": "divider", "config": {}},
    ),
    "custom_code": BlockSpec(
        title="Sandboxed custom component",
        config=("component (string, required): name passed to deploy_component", "props (object)"),
        example={"id": "kanban", "type": "custom_code", "config": {"component": "KanbanBoard", "props": {"table": "tasks"}}},
    ),
    "auth": BlockSpec(
        title="Login / registration form for app end users",
        config=('mode (string): "login" | "register"', "redirect_page_id (string)"),
        example={"id": "login", "type": "auth", "config": {"mode": "login", "redirect_page_id": "home"}},
    ),
    "file_upload": BlockSpec(
        title="File upload",
        config=("accept (string)", "max_size_mb (number)", "multiple (boolean)", "prefix (string)"),
        example={
            "id": "upload_docs",
            "type": "file_upload",
            "config": {"accept": "image/*,.pdf", "max_size_mb": 10, "multiple": True, "prefix": "documents"},
        },
    ),
    "calendar": BlockSpec(
        title="Calendar date view",
        config=(
            "table_name (string, required)",
            "title_key (string, required), start_key (string, required), end_key (string)",
            'default_view (string): "month" | "week"',
        ),
        data_source=("table (string, required)",),
        example={
            "id": "cal_events",
            "type": "calendar",
            "config": {"table_name": "events", "title_key": "title", "start_key": "event_date", "default_view": "month"},
            "data_source": {"table": "events"},
        },
    ),
    "form_dialog": BlockSpec(
        title="Modal form opened by a button",
        config=(
            "trigger_label (string, required)",
            "table_name (string, required)",
            'fields (array, required): [{key, label, type, required, options}]',
            "title (string), submit_label (string)",
        ),
        example={
            "id": "dialog_add_task",
            "type": "form_dialog",
            "config": {
                "trigger_label": "Add Task",
                "title": "New Task",
                "table_name": "tasks",
                "fields": [{"key": "title", "label": "Title", "type": "text", "required": True}],
            },
        },
    ),
}


def render_block_spec(block_type: str) -> str | None:
    spec = BLOCK_SPECS.get(block_type)
    if spec is None:
        return None
    lines = [f"## {block_type}: {spec.title}", "", "**config:**"]
    lines.extend(f"- {item}" for item in spec.config)
    if spec.data_source:
        lines.extend(["", "**data_source:**"])
        lines.extend(f"- {item}" for item in spec.data_source)
    lines.extend(["", "**Example:**", "```json", json.dumps(spec.example, indent=2), "```"])
    return "\n".join(lines)
