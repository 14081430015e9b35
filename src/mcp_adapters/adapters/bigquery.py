"""BigQuery adapter: queries, dataset and table management, load/copy/export jobs.

Requires ``GOOGLE_APPLICATION_CREDENTIALS`` (a service account key file).
The default project comes from the credentials or ``GOOGLE_CLOUD_PROJECT``;
most tools accept ``projectId`` to override it.  Set ``BQ_MAX_BYTES_BILLED``
to cap the bytes any single query may bill; BigQuery fails the job instead
of running past the cap.
"""

from __future__ import annotations

import json
import logging
import os
import re
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterator

from google.api_core.exceptions import GoogleAPIError, NotFound
from google.auth.exceptions import GoogleAuthError
from google.cloud import bigquery, bigquery_datatransfer
from mcp.server import Server
from mcp.types import TextContent, Tool

from ..base import (
    PromptRoute,
    ResourceRoute,
    ToolHandler,
    build_server,
    configure_logging,
    int_arg,
    json_response,
    require_args,
    require_env,
    run_stdio,
    text_response,
)
from ..errors import ConfigurationError, ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

ENV_MAX_BYTES_BILLED = "BQ_MAX_BYTES_BILLED"
MAX_RESULTS = 1000
SAMPLE_ROWS = 10

FIELD_TYPES = (
    "STRING", "INTEGER", "FLOAT", "BOOLEAN", "TIMESTAMP", "DATE", "TIME",
    "DATETIME", "RECORD", "BYTES", "NUMERIC", "BIGNUMERIC", "JSON",
)
FIELD_MODES = ("NULLABLE", "REQUIRED", "REPEATED")
NUMERIC_TYPES = ("INTEGER", "INT64", "FLOAT", "FLOAT64", "NUMERIC", "BIGNUMERIC")
PARTITION_TYPES = ("DAY", "HOUR", "MONTH", "YEAR")
WRITE_DISPOSITIONS = ("WRITE_TRUNCATE", "WRITE_APPEND", "WRITE_EMPTY")
CREATE_DISPOSITIONS = ("CREATE_IF_NEEDED", "CREATE_NEVER")
ANALYSIS_FORMATS = ("json", "table", "summary")

# Names callers use mapped to BigQuery's format identifiers
LOAD_FORMATS = {
    "CSV": "CSV",
    "JSON": "NEWLINE_DELIMITED_JSON",
    "AVRO": "AVRO",
    "PARQUET": "PARQUET",
    "ORC": "ORC",
}
EXPORT_FORMATS = {
    "CSV": "CSV",
    "JSON": "NEWLINE_DELIMITED_JSON",
    "AVRO": "AVRO",
    "PARQUET": "PARQUET",
}
COMPRESSIONS = ("NONE", "GZIP", "DEFLATE", "SNAPPY")

# Data Transfer Service schedule syntax for the friendly names
SCHEDULE_ALIASES = {
    "daily": "every 24 hours",
    "every day": "every 24 hours",
    "everyday": "every 24 hours",
    "weekly": "every sunday 00:00",
    "monthly": "1 of month 00:00",
}
_CRON_MINUTES_RE = re.compile(r"^\*/(\d+) \* \* \* \*$")
_CRON_DAILY_RE = re.compile(r"^(\d{1,2}) (\d{1,2}) \* \* \*$")

_client: bigquery.Client | None = None
_transfer_client: bigquery_datatransfer.DataTransferServiceClient | None = None

_PROJECT = {"type": "string", "description": "Project ID (defaults to the credentials' project)"}
_LEGACY_SQL = {"type": "boolean", "description": "Use legacy SQL instead of GoogleSQL", "default": False}
_WRITE = {"type": "string", "enum": list(WRITE_DISPOSITIONS)}
_CREATE = {"type": "string", "enum": list(CREATE_DISPOSITIONS)}
_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "type": {"type": "string", "enum": list(FIELD_TYPES)},
            "mode": {"type": "string", "enum": list(FIELD_MODES)},
            "description": {"type": "string"},
        },
        "required": ["name", "type"],
    },
}


def _build_tools() -> list[Tool]:
    return [
        Tool(
            name="executeQuery",
            description="Run a SQL query and return its rows with job statistics.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "projectId": _PROJECT,
                    "maxResults": {"type": "integer", "default": MAX_RESULTS},
                    "useLegacySql": _LEGACY_SQL,
                },
                "required": ["query"],
            },
        ),
        Tool(
            name="listDatasets",
            description="List the datasets of a project.",
            inputSchema={"type": "object", "properties": {"projectId": _PROJECT}},
        ),
        Tool(
            name="listTables",
            description="List the tables and views of a dataset.",
            inputSchema={
                "type": "object",
                "properties": {"datasetId": {"type": "string"}, "projectId": _PROJECT},
                "required": ["datasetId"],
            },
        ),
        Tool(
            name="getTableSchema",
            description="Schema and metadata (row count, size, timestamps) of a table.",
            inputSchema={
                "type": "object",
                "properties": {
                    "datasetId": {"type": "string"},
                    "tableId": {"type": "string"},
                    "projectId": _PROJECT,
                },
                "required": ["datasetId", "tableId"],
            },
        ),
        Tool(
            name="createDataset",
            description="Create a dataset.",
            inputSchema={
                "type": "object",
                "properties": {
                    "datasetId": {"type": "string"},
                    "projectId": _PROJECT,
                    "location": {"type": "string", "default": "US"},
                    "description": {"type": "string"},
                    "labels": {"type": "object", "additionalProperties": {"type": "string"}},
                },
                "required": ["datasetId"],
            },
        ),
        Tool(
            name="exportQueryToTable",
            description="Run a query and write its result into a destination table.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "destinationDatasetId": {"type": "string"},
                    "destinationTableId": {"type": "string"},
                    "projectId": _PROJECT,
                    "writeDisposition": {**_WRITE, "default": "WRITE_EMPTY"},
                    "createDisposition": {**_CREATE, "default": "CREATE_IF_NEEDED"},
                    "useLegacySql": _LEGACY_SQL,
                },
                "required": ["query", "destinationDatasetId", "destinationTableId"],
            },
        ),
        Tool(
            name="deleteTable",
            description="Delete a table.",
            inputSchema={
                "type": "object",
                "properties": {
                    "datasetId": {"type": "string"},
                    "tableId": {"type": "string"},
                    "projectId": _PROJECT,
                },
                "required": ["datasetId", "tableId"],
            },
        ),
        Tool(
            name="getJobInfo",
            description="State, statistics and errors of a job.",
            inputSchema={
                "type": "object",
                "properties": {"jobId": {"type": "string"}, "projectId": _PROJECT},
                "required": ["jobId"],
            },
        ),
        Tool(
            name="createTable",
            description="Create a table from a field list, optionally partitioned by time and clustered.",
            inputSchema={
                "type": "object",
                "properties": {
                    "datasetId": {"type": "string"},
                    "tableId": {"type": "string"},
                    "schema": _SCHEMA,
                    "projectId": _PROJECT,
                    "description": {"type": "string"},
                    "timePartitioning": {
                        "type": "object",
                        "properties": {
                            "type": {"type": "string", "enum": list(PARTITION_TYPES)},
                            "field": {"type": "string"},
                            "expirationMs": {"type": "integer"},
                        },
                        "required": ["type"],
                    },
                    "clustering": {
                        "type": "object",
                        "properties": {
                            "fields": {"type": "array", "items": {"type": "string"}, "minItems": 1, "maxItems": 4}
                        },
                        "required": ["fields"],
                    },
                },
                "required": ["datasetId", "tableId", "schema"],
            },
        ),
        Tool(
            name="loadData",
            description="Load files from Cloud Storage (gs://) into a table.",
            inputSchema={
                "type": "object",
                "properties": {
                    "datasetId": {"type": "string"},
                    "tableId": {"type": "string"},
                    "sourceFormat": {"type": "string", "enum": list(LOAD_FORMATS)},
                    "sourceUri": {"type": "string", "description": "gs://bucket/path, wildcards allowed"},
                    "projectId": _PROJECT,
                    "writeDisposition": {**_WRITE, "default": "WRITE_APPEND"},
                    "createDisposition": {**_CREATE, "default": "CREATE_IF_NEEDED"},
                    "schema": _SCHEMA,
                    "skipLeadingRows": {"type": "integer", "description": "CSV only"},
                    "autodetect": {"type": "boolean", "default": False},
                },
                "required": ["datasetId", "tableId", "sourceFormat", "sourceUri"],
            },
        ),
        Tool(
            name="analyzeData",
            description="Run a query and present the rows as JSON, a text table, or per-column statistics.",
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "projectId": _PROJECT,
                    "format": {"type": "string", "enum": list(ANALYSIS_FORMATS), "default": "json"},
                    "maxResults": {"type": "integer", "default": MAX_RESULTS},
                    "useLegacySql": _LEGACY_SQL,
                },
                "required": ["query"],
            },
        ),
        Tool(
            name="copyTable",
            description="Copy a table, possibly into another dataset.",
            inputSchema={
                "type": "object",
                "properties": {
                    "sourceDatasetId": {"type": "string"},
                    "sourceTableId": {"type": "string"},
                    "destinationDatasetId": {"type": "string"},
                    "destinationTableId": {"type": "string"},
                    "projectId": _PROJECT,
                    "writeDisposition": {**_WRITE, "default": "WRITE_EMPTY"},
                    "createDisposition": {**_CREATE, "default": "CREATE_IF_NEEDED"},
                },
                "required": ["sourceDatasetId", "sourceTableId", "destinationDatasetId", "destinationTableId"],
            },
        ),
        Tool(
            name="exportTableToGCS",
            description="Export a table to Cloud Storage (gs://).",
            inputSchema={
                "type": "object",
                "properties": {
                    "datasetId": {"type": "string"},
                    "tableId": {"type": "string"},
                    "destinationUri": {"type": "string", "description": "gs://bucket/path, may contain *"},
                    "projectId": _PROJECT,
                    "format": {"type": "string", "enum": list(EXPORT_FORMATS), "default": "CSV"},
                    "compression": {"type": "string", "enum": list(COMPRESSIONS)},
                    "fieldDelimiter": {"type": "string", "maxLength": 1, "description": "CSV only"},
                    "printHeader": {"type": "boolean", "default": True, "description": "CSV only"},
                },
                "required": ["datasetId", "tableId", "destinationUri"],
            },
        ),
        Tool(
            name="createScheduledQuery",
            description=(
                "Schedule a query through the BigQuery Data Transfer Service. schedule accepts "
                "daily, weekly, monthly, simple cron ('*/15 * * * *', '30 2 * * *') or the "
                "service's own syntax ('every 6 hours')."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "displayName": {"type": "string"},
                    "schedule": {"type": "string"},
                    "destinationDatasetId": {"type": "string"},
                    "destinationTableId": {"type": "string"},
                    "projectId": _PROJECT,
                    "writeDisposition": {
                        "type": "string",
                        "enum": ["WRITE_TRUNCATE", "WRITE_APPEND"],
                        "default": "WRITE_TRUNCATE",
                    },
                },
                "required": ["query", "displayName", "schedule", "destinationDatasetId", "destinationTableId"],
            },
        ),
        Tool(
            name="generateQuery",
            description="Draft a SQL query for a plain-language request from the dataset's table schemas.",
            inputSchema={
                "type": "object",
                "properties": {
                    "description": {"type": "string"},
                    "datasetId": {"type": "string"},
                    "projectId": _PROJECT,
                    "includeComments": {"type": "boolean", "default": True},
                },
                "required": ["description", "datasetId"],
            },
        ),
    ]


TOOLS = _build_tools()

# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


def get_client() -> bigquery.Client:
    global _client
    if _client is None:
        require_env("GOOGLE_APPLICATION_CREDENTIALS")
        try:
            _client = bigquery.Client()
        except (GoogleAuthError, OSError) as e:
            raise ConfigurationError(f"Cannot create BigQuery client: {e}", e) from e
        logger.info("Created BigQuery client for project %s", _client.project)
    return _client


def set_client(client: Any) -> None:
    """Replace the shared client (None resets it to be rebuilt from the environment)."""
    global _client
    _client = client


def get_transfer_client() -> bigquery_datatransfer.DataTransferServiceClient:
    global _transfer_client
    if _transfer_client is None:
        require_env("GOOGLE_APPLICATION_CREDENTIALS")
        try:
            _transfer_client = bigquery_datatransfer.DataTransferServiceClient()
        except (GoogleAuthError, OSError) as e:
            raise ConfigurationError(f"Cannot create Data Transfer client: {e}", e) from e
    return _transfer_client


def set_transfer_client(client: Any) -> None:
    global _transfer_client
    _transfer_client = client


def max_bytes_billed() -> int | None:
    raw = os.environ.get(ENV_MAX_BYTES_BILLED, "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{ENV_MAX_BYTES_BILLED} must be a whole number of bytes, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{ENV_MAX_BYTES_BILLED} must be positive, got {value}")
    return value


def query_config(use_legacy_sql: bool = False, **settings: Any) -> bigquery.QueryJobConfig:
    """Job config for a query, carrying the billing cap when one is configured."""
    config = bigquery.QueryJobConfig(use_legacy_sql=use_legacy_sql, **settings)
    cap = max_bytes_billed()
    if cap is not None:
        config.maximum_bytes_billed = cap
    return config


@contextmanager
def google_errors(action: str) -> Iterator[None]:
    """Turn API failures into adapter errors prefixed with *action*."""
    try:
        yield
    except NotFound as e:
        raise ValidationError(f"{action}: {e.message}", e) from e
    except GoogleAPIError as e:
        raise ExternalServiceError(f"{action}: {e}", e) from e


def table_path(client: Any, dataset_id: str, table_id: str, project: str | None = None) -> str:
    return f"{project or client.project}.{dataset_id}.{table_id}"


def dataset_path(client: Any, dataset_id: str, project: str | None = None) -> str:
    return f"{project or client.project}.{dataset_id}"


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

_JOB_STATISTICS = {
    "total_bytes_processed": "totalBytesProcessed",
    "total_bytes_billed": "totalBytesBilled",
    "cache_hit": "cacheHit",
    "slot_millis": "slotMillis",
    "num_dml_affected_rows": "numDmlAffectedRows",
    "output_rows": "outputRows",
    "input_files": "inputFiles",
    "input_file_bytes": "inputFileBytes",
    "destination_uri_file_counts": "destinationUriFileCounts",
}


def job_statistics(job: Any) -> dict[str, Any]:
    stats: dict[str, Any] = {}
    for attr, key in _JOB_STATISTICS.items():
        value = getattr(job, attr, None)
        if value is not None:
            stats[key] = value
    for attr, key in (("created", "creationTime"), ("started", "startTime"), ("ended", "endTime")):
        value = getattr(job, attr, None)
        if value is not None:
            stats[key] = value.isoformat()
    return stats


def schema_fields(schema: list[Any]) -> list[dict[str, Any]]:
    return [field.to_api_repr() for field in schema]


def build_schema(fields: Any) -> list[bigquery.SchemaField]:
    if not isinstance(fields, list) or not fields:
        raise ValidationError("schema must be a non-empty array of fields")
    schema = []
    for field in fields:
        if not isinstance(field, dict) or not field.get("name"):
            raise ValidationError("Every schema field needs a name")
        field_type = str(field.get("type", "")).upper()
        if field_type not in FIELD_TYPES:
            raise ValidationError(f"Field {field['name']}: type must be one of {', '.join(FIELD_TYPES)}")
        mode = str(field.get("mode") or "NULLABLE").upper()
        if mode not in FIELD_MODES:
            raise ValidationError(f"Field {field['name']}: mode must be one of {', '.join(FIELD_MODES)}")
        schema.append(
            bigquery.SchemaField(field["name"], field_type, mode=mode, description=field.get("description"))
        )
    return schema


def table_metadata(table: Any) -> dict[str, Any]:
    partitioning = getattr(table, "time_partitioning", None)
    return {
        "schema": schema_fields(table.schema),
        "numRows": table.num_rows,
        "numBytes": table.num_bytes,
        "creationTime": table.created,
        "lastModifiedTime": table.modified,
        "type": table.table_type,
        "description": table.description,
        "timePartitioning": partitioning.to_api_repr() if partitioning is not None else None,
        "clustering": getattr(table, "clustering_fields", None),
    }


def _cell(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def format_table(rows: list[dict[str, Any]]) -> str:
    """Pipe-separated text table; None renders as NULL."""
    headers = list(rows[0])
    lines = [" | ".join(headers), " | ".join("-" * len(h) for h in headers)]
    lines.extend(" | ".join(_cell(row.get(h)) for h in headers) for row in rows)
    return "\n".join(lines)


def column_statistics(rows: list[dict[str, Any]], column: str) -> dict[str, Any]:
    values = [row.get(column) for row in rows]
    present = [v for v in values if v is not None]
    stats: dict[str, Any] = {"column": column, "nonNullCount": len(present), "nullCount": len(values) - len(present)}
    if not present:
        return stats
    sample = present[0]
    if isinstance(sample, (int, float, Decimal)) and not isinstance(sample, bool):
        numbers = [float(v) for v in present if isinstance(v, (int, float, Decimal)) and not isinstance(v, bool)]
        stats.update(type="numeric", min=min(numbers), max=max(numbers), avg=sum(numbers) / len(numbers))
    elif isinstance(sample, str):
        lengths = [len(v) for v in present if isinstance(v, str)]
        stats.update(
            type="string",
            minLength=min(lengths),
            maxLength=max(lengths),
            uniqueValues=len({v for v in present if isinstance(v, str)}),
        )
    elif isinstance(sample, (datetime, date)):
        moments = sorted(v for v in present if isinstance(v, type(sample)))
        stats.update(type="datetime", min=moments[0].isoformat(), max=moments[-1].isoformat())
    else:
        stats["type"] = type(sample).__name__
    return stats


def format_analysis(rows: list[dict[str, Any]], fmt: str) -> str:
    if not rows:
        return "Query returned no results"
    if fmt == "table":
        return format_table(rows)
    if fmt == "summary":
        columns = list(rows[0])
        stats = [column_statistics(rows, c) for c in columns]
        return (
            f"Query returned {len(rows)} rows with {len(columns)} columns.\n\n"
            f"Column Statistics:\n{json.dumps(stats, indent=2, default=str)}"
        )
    return json.dumps(rows, indent=2, default=str)


# ---------------------------------------------------------------------------
# Query drafting
# ---------------------------------------------------------------------------


def _pick_table(description: str, tables: dict[str, list[dict[str, Any]]]) -> str:
    lowered = description.lower()
    for name in tables:
        if name.lower() in lowered:
            return name
    return next(iter(tables), "unknown_table")


def schema_comment(tables: dict[str, list[dict[str, Any]]]) -> str:
    lines = ["/*", "Available tables and schemas:", ""]
    for name, fields in tables.items():
        lines.append(f"TABLE: {name}")
        for field in fields:
            mode = field.get("mode") or "NULLABLE"
            suffix = f" ({mode})" if mode != "NULLABLE" else ""
            lines.append(f"  - {field['name']}: {field['type']}{suffix}")
        lines.append("")
    lines.append("*/")
    return "\n".join(lines)


def draft_query(
    description: str,
    dataset_id: str,
    tables: dict[str, list[dict[str, Any]]],
    include_comments: bool = True,
) -> str:
    """Keyword-driven starting query: a count, an aggregate or a plain select.

    *tables* maps table names to their API schema fields.  The table named
    in *description* is used when there is one, otherwise the first.
    """
    table = _pick_table(description, tables)
    fields = tables.get(table, [])
    source = f"`{dataset_id}.{table}`"
    if re.search(r"count|how many", description, re.IGNORECASE):
        query = f"-- Count query based on: {description}\nSELECT COUNT(*) AS count\nFROM {source}"
        if fields and re.search(r"where|filter|condition", description, re.IGNORECASE):
            query += f"\nWHERE {fields[0]['name']} IS NOT NULL"
    elif re.search(r"average|avg|mean|sum|total", description, re.IGNORECASE):
        numeric = [f for f in fields if str(f.get("type", "")).upper() in NUMERIC_TYPES]
        if numeric:
            operation = "SUM" if re.search(r"sum|total", description, re.IGNORECASE) else "AVG"
            query = (
                f"-- Aggregation query based on: {description}\n"
                f"SELECT {operation}({numeric[0]['name']}) AS result\nFROM {source}"
            )
        else:
            query = (
                "-- Could not generate an aggregation query because no numeric fields were found\n"
                f"-- Tables: {', '.join(tables)}\n-- Requested: {description}"
            )
    else:
        columns = ", ".join(f["name"] for f in fields[:5]) or "*"
        query = f"-- Query based on: {description}\nSELECT {columns}\nFROM {source}\nLIMIT 1000"
    if include_comments and tables:
        query = f"{schema_comment(tables)}\n\n{query}"
    return query


def transfer_schedule(schedule: str) -> str:
    """Translate friendly names and simple cron lines to Data Transfer syntax."""
    text = schedule.strip()
    alias = SCHEDULE_ALIASES.get(text.lower())
    if alias:
        return alias
    m = _CRON_MINUTES_RE.match(text)
    if m:
        return f"every {int(m.group(1))} minutes"
    m = _CRON_DAILY_RE.match(text)
    if m:
        minute, hour = int(m.group(1)), int(m.group(2))
        if minute > 59 or hour > 23:
            raise ValidationError(f"Invalid time in schedule: {schedule}")
        return f"every day {hour:02d}:{minute:02d}"
    if "*" in text:
        raise ValidationError(
            "Only '*/N * * * *' and 'M H * * *' cron forms are supported; "
            "otherwise use daily, weekly, monthly or 'every ...' syntax"
        )
    if not text:
        raise ValidationError("schedule must not be empty")
    return text


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def run_query(
    client: Any,
    query: str,
    project: str | None = None,
    max_results: int = MAX_RESULTS,
    use_legacy_sql: bool = False,
) -> tuple[list[dict[str, Any]], Any, Any]:
    """Run *query*; returns ``(rows, total_rows, job)``."""
    job = client.query(query, job_config=query_config(use_legacy_sql), project=project)
    result = job.result(max_results=max_results)
    rows = [dict(row) for row in result]
    logger.info("Query job %s returned %d rows", job.job_id, len(rows))
    return rows, result.total_rows, job


def dataset_tables(client: Any, dataset_id: str, project: str | None = None) -> list[dict[str, Any]]:
    return [
        {
            "id": item.table_id,
            "type": item.table_type,
            "creationTime": item.created,
            "expirationTime": item.expires,
        }
        for item in client.list_tables(dataset_path(client, dataset_id, project))
    ]


def project_datasets(client: Any, project: str | None = None) -> list[dict[str, Any]]:
    return [
        {
            "id": item.dataset_id,
            "project": item.project,
            "friendlyName": item.friendly_name,
            "labels": item.labels,
        }
        for item in client.list_datasets(project=project)
    ]


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


def _read_datasets(params: dict[str, str]) -> str:
    with google_errors("Error listing datasets"):
        return json.dumps(project_datasets(get_client()), indent=2, default=str)


def _read_tables(params: dict[str, str]) -> str:
    dataset_id = params["datasetId"]
    client = get_client()
    try:
        tables = dataset_tables(client, dataset_id)
    except NotFound:
        raise ValidationError(f"Dataset '{dataset_id}' does not exist") from None
    except GoogleAPIError as e:
        raise ExternalServiceError(f"Error listing tables: {e}", e) from e
    return json.dumps(tables, indent=2, default=str)


def _read_table(params: dict[str, str]) -> str:
    dataset_id, table_id = params["datasetId"], params["tableId"]
    client = get_client()
    try:
        table = client.get_table(table_path(client, dataset_id, table_id))
        sample = [dict(row) for row in client.list_rows(table, max_results=SAMPLE_ROWS)]
    except NotFound:
        raise ValidationError(f"Table '{dataset_id}.{table_id}' does not exist") from None
    except GoogleAPIError as e:
        raise ExternalServiceError(f"Error reading table: {e}", e) from e
    return json.dumps({**table_metadata(table), "sampleData": sample}, indent=2, default=str)


RESOURCES = [
    ResourceRoute("bigquery://datasets", "datasets", _read_datasets, "Datasets of the default project"),
    ResourceRoute("bigquery://{datasetId}/tables", "dataset-tables", _read_tables, "Tables of a dataset"),
    ResourceRoute(
        "bigquery://{datasetId}/table/{tableId}",
        "table",
        _read_table,
        f"Schema, metadata and the first {SAMPLE_ROWS} rows of a table",
    ),
]

# ---------------------------------------------------------------------------
# Individual tool handlers
# ---------------------------------------------------------------------------


def _choice(args: dict[str, Any], name: str, allowed: Any, default: str | None = None) -> str:
    value = args.get(name) or default
    if value not in allowed:
        raise ValidationError(f"{name} must be one of {', '.join(allowed)}")
    return value


def _gcs_uri(args: dict[str, Any], name: str) -> str:
    uri = str(args[name])
    if not uri.startswith("gs://"):
        raise ValidationError(f"{name} must be a Cloud Storage URI starting with gs://")
    return uri


def _handle_execute_query(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "query")
    max_results = int_arg(args, "maxResults", MAX_RESULTS, 1, 100_000)
    with google_errors("Error executing query"):
        rows, total, job = run_query(
            get_client(), args["query"], args.get("projectId"), max_results, bool(args.get("useLegacySql"))
        )
    return json_response({"rows": rows, "totalRows": total, "jobId": job.job_id, "statistics": job_statistics(job)})


def _handle_list_datasets(args: dict[str, Any]) -> list[TextContent]:
    with google_errors("Error listing datasets"):
        datasets = project_datasets(get_client(), args.get("projectId"))
    return json_response({"datasets": datasets, "count": len(datasets)})


def _handle_list_tables(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "datasetId")
    with google_errors("Error listing tables"):
        tables = dataset_tables(get_client(), args["datasetId"], args.get("projectId"))
    return json_response({"tables": tables, "count": len(tables)})


def _handle_table_schema(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "datasetId", "tableId")
    client = get_client()
    with google_errors("Error getting table schema"):
        table = client.get_table(table_path(client, args["datasetId"], args["tableId"], args.get("projectId")))
    return json_response(table_metadata(table))


def _handle_create_dataset(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "datasetId")
    client = get_client()
    dataset = bigquery.Dataset(dataset_path(client, args["datasetId"], args.get("projectId")))
    dataset.location = args.get("location") or "US"
    if args.get("description"):
        dataset.description = args["description"]
    if args.get("labels"):
        dataset.labels = dict(args["labels"])
    with google_errors("Error creating dataset"):
        created = client.create_dataset(dataset)
    logger.info("Created dataset %s in %s", created.dataset_id, created.location)
    return json_response(
        {
            "datasetId": created.dataset_id,
            "name": created.full_dataset_id,
            "location": created.location,
            "creationTime": created.created,
            "description": created.description,
        }
    )


def _handle_export_query(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "query", "destinationDatasetId", "destinationTableId")
    client = get_client()
    project = args.get("projectId")
    destination = table_path(client, args["destinationDatasetId"], args["destinationTableId"], project)
    config = query_config(
        bool(args.get("useLegacySql")),
        destination=destination,
        write_disposition=_choice(args, "writeDisposition", WRITE_DISPOSITIONS, "WRITE_EMPTY"),
        create_disposition=_choice(args, "createDisposition", CREATE_DISPOSITIONS, "CREATE_IF_NEEDED"),
    )
    with google_errors("Error exporting query results"):
        job = client.query(args["query"], job_config=config, project=project)
        job.result()
    return json_response(
        {
            "status": job.state,
            "jobId": job.job_id,
            "statistics": job_statistics(job),
            "destinationTable": {"dataset": args["destinationDatasetId"], "table": args["destinationTableId"]},
        }
    )


def _handle_delete_table(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "datasetId", "tableId")
    client = get_client()
    name = f"{args['datasetId']}.{args['tableId']}"
    path = table_path(client, args["datasetId"], args["tableId"], args.get("projectId"))
    try:
        client.delete_table(path)
    except NotFound:
        raise ValidationError(f"Table {name} does not exist") from None
    except GoogleAPIError as e:
        raise ExternalServiceError(f"Error deleting table: {e}", e) from e
    logger.info("Deleted table %s", path)
    return json_response({"success": True, "message": f"Table {name} successfully deleted"})


def _handle_job_info(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "jobId")
    with google_errors("Error getting job info"):
        job = get_client().get_job(args["jobId"], project=args.get("projectId"))
    return json_response(
        {
            "id": job.job_id,
            "type": job.job_type,
            "user_email": job.user_email,
            "status": {"state": job.state, "errorResult": job.error_result, "errors": job.errors},
            "statistics": job_statistics(job),
            "location": job.location,
        }
    )


def _handle_create_table(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "datasetId", "tableId", "schema")
    client = get_client()
    table = bigquery.Table(
        table_path(client, args["datasetId"], args["tableId"], args.get("projectId")),
        schema=build_schema(args["schema"]),
    )
    if args.get("description"):
        table.description = args["description"]
    partitioning = args.get("timePartitioning")
    if partitioning:
        table.time_partitioning = bigquery.TimePartitioning(
            type_=_choice(partitioning, "type", PARTITION_TYPES),
            field=partitioning.get("field"),
            expiration_ms=partitioning.get("expirationMs"),
        )
    clustering = args.get("clustering")
    if clustering:
        fields = clustering.get("fields") or []
        if not 1 <= len(fields) <= 4:
            raise ValidationError("clustering.fields must list between 1 and 4 fields")
        table.clustering_fields = list(fields)
    with google_errors("Error creating table"):
        created = client.create_table(table)
    logger.info("Created table %s", created.full_table_id)
    return json_response(
        {
            "tableId": created.table_id,
            "datasetId": created.dataset_id,
            "schema": schema_fields(created.schema),
            "creationTime": created.created,
            "timePartitioning": partitioning or None,
            "clustering": clustering or None,
        }
    )


def _handle_load_data(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "datasetId", "tableId", "sourceFormat", "sourceUri")
    source_format = _choice(args, "sourceFormat", LOAD_FORMATS)
    uri = _gcs_uri(args, "sourceUri")
    config = bigquery.LoadJobConfig(
        source_format=LOAD_FORMATS[source_format],
        write_disposition=_choice(args, "writeDisposition", WRITE_DISPOSITIONS, "WRITE_APPEND"),
        create_disposition=_choice(args, "createDisposition", CREATE_DISPOSITIONS, "CREATE_IF_NEEDED"),
        autodetect=bool(args.get("autodetect")),
    )
    if args.get("schema"):
        config.schema = build_schema(args["schema"])
    if source_format == "CSV" and args.get("skipLeadingRows") is not None:
        config.skip_leading_rows = int_arg(args, "skipLeadingRows", 0, 0, 1_000_000)
    client = get_client()
    project = args.get("projectId")
    destination = table_path(client, args["datasetId"], args["tableId"], project)
    with google_errors("Error loading data"):
        job = client.load_table_from_uri(uri, destination, job_config=config, project=project)
        job.result()
    logger.info("Loaded %s into %s", uri, destination)
    return json_response(
        {
            "status": job.state,
            "jobId": job.job_id,
            "statistics": job_statistics(job),
            "destinationTable": f"{args['datasetId']}.{args['tableId']}",
        }
    )


def _handle_analyze(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "query")
    fmt = _choice(args, "format", ANALYSIS_FORMATS, "json")
    max_results = int_arg(args, "maxResults", MAX_RESULTS, 1, 100_000)
    with google_errors("Error analyzing data"):
        rows, _total, _job = run_query(
            get_client(), args["query"], args.get("projectId"), max_results, bool(args.get("useLegacySql"))
        )
    return text_response(format_analysis(rows, fmt))


def _handle_copy_table(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "sourceDatasetId", "sourceTableId", "destinationDatasetId", "destinationTableId")
    client = get_client()
    project = args.get("projectId")
    source = table_path(client, args["sourceDatasetId"], args["sourceTableId"], project)
    destination = table_path(client, args["destinationDatasetId"], args["destinationTableId"], project)
    config = bigquery.CopyJobConfig(
        write_disposition=_choice(args, "writeDisposition", WRITE_DISPOSITIONS, "WRITE_EMPTY"),
        create_disposition=_choice(args, "createDisposition", CREATE_DISPOSITIONS, "CREATE_IF_NEEDED"),
    )
    with google_errors("Error copying table"):
        job = client.copy_table(source, destination, job_config=config, project=project)
        job.result()
    return json_response(
        {
            "status": job.state,
            "jobId": job.job_id,
            "statistics": job_statistics(job),
            "sourceTable": f"{args['sourceDatasetId']}.{args['sourceTableId']}",
            "destinationTable": f"{args['destinationDatasetId']}.{args['destinationTableId']}",
        }
    )


def _handle_export_table(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "datasetId", "tableId", "destinationUri")
    uri = _gcs_uri(args, "destinationUri")
    fmt = _choice(args, "format", EXPORT_FORMATS, "CSV")
    config = bigquery.ExtractJobConfig(destination_format=EXPORT_FORMATS[fmt])
    compression = args.get("compression")
    if compression:
        config.compression = _choice(args, "compression", COMPRESSIONS)
    if fmt == "CSV":
        delimiter = args.get("fieldDelimiter")
        if delimiter:
            if len(delimiter) != 1:
                raise ValidationError("fieldDelimiter must be a single character")
            config.field_delimiter = delimiter
        config.print_header = bool(args.get("printHeader", True))
    client = get_client()
    project = args.get("projectId")
    source = table_path(client, args["datasetId"], args["tableId"], project)
    with google_errors("Error exporting table"):
        job = client.extract_table(source, uri, job_config=config, project=project)
        job.result()
    logger.info("Exported %s to %s", source, uri)
    return json_response(
        {
            "status": job.state,
            "jobId": job.job_id,
            "statistics": job_statistics(job),
            "sourceTable": f"{args['datasetId']}.{args['tableId']}",
            "destinationUri": uri,
            "format": fmt,
        }
    )


def _handle_scheduled_query(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "query", "displayName", "schedule", "destinationDatasetId", "destinationTableId")
    schedule = transfer_schedule(str(args["schedule"]))
    write = _choice(args, "writeDisposition", ("WRITE_TRUNCATE", "WRITE_APPEND"), "WRITE_TRUNCATE")
    project = args.get("projectId") or get_client().project
    config = bigquery_datatransfer.TransferConfig(
        destination_dataset_id=args["destinationDatasetId"],
        display_name=args["displayName"],
        data_source_id="scheduled_query",
        params={
            "query": args["query"],
            "destination_table_name_template": args["destinationTableId"],
            "write_disposition": write,
        },
        schedule=schedule,
    )
    try:
        created = get_transfer_client().create_transfer_config(
            parent=f"projects/{project}", transfer_config=config
        )
    except GoogleAPIError as e:
        raise ExternalServiceError(
            f"Error creating scheduled query: {e}\n\nNote: Creating scheduled queries requires additional "
            "permissions and might require the Data Transfer API to be enabled.",
            e,
        ) from e
    logger.info("Created scheduled query %s (%s)", created.name, schedule)
    return json_response(
        {
            "name": created.name,
            "displayName": created.display_name,
            "schedule": created.schedule,
            "state": getattr(created.state, "name", created.state),
            "destinationTable": f"{args['destinationDatasetId']}.{args['destinationTableId']}",
        }
    )


def _handle_generate_query(args: dict[str, Any]) -> list[TextContent]:
    require_args(args, "description", "datasetId")
    client = get_client()
    project = args.get("projectId")
    tables: dict[str, list[dict[str, Any]]] = {}
    with google_errors("Error generating query"):
        for item in client.list_tables(dataset_path(client, args["datasetId"], project)):
            table = client.get_table(table_path(client, args["datasetId"], item.table_id, project))
            tables[item.table_id] = schema_fields(table.schema)
    query = draft_query(args["description"], args["datasetId"], tables, args.get("includeComments", True))
    return text_response(f'Generated SQL query for: "{args["description"]}"\n\n{query}')


HANDLERS: dict[str, ToolHandler] = {
    "executeQuery": _handle_execute_query,
    "listDatasets": _handle_list_datasets,
    "listTables": _handle_list_tables,
    "getTableSchema": _handle_table_schema,
    "createDataset": _handle_create_dataset,
    "exportQueryToTable": _handle_export_query,
    "deleteTable": _handle_delete_table,
    "getJobInfo": _handle_job_info,
    "createTable": _handle_create_table,
    "loadData": _handle_load_data,
    "analyzeData": _handle_analyze,
    "copyTable": _handle_copy_table,
    "exportTableToGCS": _handle_export_table,
    "createScheduledQuery": _handle_scheduled_query,
    "generateQuery": _handle_generate_query,
}

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def _analyze_prompt(args: dict[str, str]) -> str:
    dataset = args["datasetId"]
    target = f"table {dataset}.{args['tableId']}" if args.get("tableId") else f"dataset {dataset}"
    where = f" in project {args['projectId']}" if args.get("projectId") else ""
    source = (
        f"bigquery://{dataset}/table/{args['tableId']}" if args.get("tableId") else f"bigquery://{dataset}/tables"
    )
    return (
        f"Analyze the BigQuery {target}{where}.\n\nGoal: {args['analysisGoal']}\n\n"
        f"Start by reading {source} to learn the schema and look at sample rows. Then write "
        "GoogleSQL queries that answer the goal and run them with analyzeData (format summary "
        "for a first look, table for results). Select only the columns you need and filter "
        "on partition columns where they exist. Finish with the findings and the queries used."
    )


def _pipeline_prompt(args: dict[str, str]) -> str:
    destination = f"{args['destinationDatasetId']}.{args['destinationTableId']}"
    text = (
        f"Design a data pipeline that loads data from {args['sourceType']} into BigQuery table "
        f"{destination}.\n\nPurpose: {args['pipelinePurpose']}\n\n"
    )
    if args.get("transformations"):
        text += f"Transformations: {args['transformations']}\n\n"
    if args.get("schedule"):
        text += f"Schedule: {args['schedule']}\n\n"
    return text + (
        "Propose the destination schema (createTable, with partitioning and clustering where it "
        "helps), how the data gets in (loadData from gs:// files, or exportQueryToTable from "
        "other tables), the SQL for each transformation, and a createScheduledQuery call if the "
        "pipeline must run repeatedly. Mention how to check data quality after each run."
    )


def _visualize_prompt(args: dict[str, str]) -> str:
    kind = args.get("visualizationType") or "chart"
    return (
        f"Prepare a {kind} visualization of BigQuery table {args['datasetId']}.{args['tableId']}.\n\n"
        f"Goal: {args['visualizationGoal']}\n\n"
        f"Read bigquery://{args['datasetId']}/table/{args['tableId']} for the schema and sample "
        "rows, then write an aggregating query that returns only what the visualization needs "
        "and run it with analyzeData. Recommend the chart type, axes and grouping, and describe "
        "what the result shows."
    )


def _optimize_prompt(args: dict[str, str]) -> str:
    goal = args.get("optimizationGoal") or "both"
    if goal not in ("performance", "cost", "both"):
        raise ValidationError("optimizationGoal must be one of performance, cost, both")
    label = "performance and cost" if goal == "both" else goal
    text = f"Optimize this BigQuery SQL query for {label}:\n\n```sql\n{args['query']}\n```\n\n"
    try:
        job = get_client().query(
            args["query"], job_config=query_config(dry_run=True, use_query_cache=False)
        )
        text += f"A dry run estimates {job.total_bytes_processed} bytes processed.\n\n"
    except (GoogleAPIError, ConfigurationError) as e:
        logger.warning("Dry run failed: %s", e)
        text += f"The dry run failed: {e}\n\n"
    if args.get("datasetInfo"):
        text += f"Dataset information: {args['datasetInfo']}\n\n"
    return text + (
        "Suggest a rewritten query and explain each change: column pruning instead of SELECT *, "
        "partition and cluster filters, earlier aggregation, join order and approximate "
        "functions where exact results are not needed."
    )


PROMPTS = [
    PromptRoute(
        "analyze-bigquery-data",
        "Explore a dataset or table towards an analysis goal",
        _analyze_prompt,
        [
            ("datasetId", "Dataset to analyze", True),
            ("analysisGoal", "What the analysis should find out", True),
            ("tableId", "Table to focus on", False),
            ("projectId", "Project of the dataset", False),
        ],
    ),
    PromptRoute(
        "create-bigquery-pipeline",
        "Plan a pipeline that loads and transforms data into a table",
        _pipeline_prompt,
        [
            ("sourceType", "gcs, csv, json, api, database or bigquery", True),
            ("destinationDatasetId", "Destination dataset", True),
            ("destinationTableId", "Destination table", True),
            ("pipelinePurpose", "What the pipeline is for", True),
            ("transformations", "Transformations to apply", False),
            ("schedule", "How often it runs", False),
        ],
    ),
    PromptRoute(
        "visualize-bigquery-data",
        "Prepare the data and layout of a visualization",
        _visualize_prompt,
        [
            ("datasetId", "Dataset of the table", True),
            ("tableId", "Table to visualize", True),
            ("visualizationGoal", "What the visualization should show", True),
            ("visualizationType", "table, chart, dashboard, report or map", False),
            ("projectId", "Project of the dataset", False),
        ],
    ),
    PromptRoute(
        "optimize-bigquery",
        "Review a query for speed and bytes billed, with a dry-run estimate",
        _optimize_prompt,
        [
            ("query", "SQL to optimize", True),
            ("optimizationGoal", "performance, cost or both", False),
            ("datasetInfo", "Anything known about the tables involved", False),
        ],
    ),
]


def create_mcp_server(name: str = "bigquery") -> Server:
    return build_server(name, TOOLS, HANDLERS, RESOURCES, PROMPTS)


def main_stdio() -> None:
    configure_logging()
    run_stdio(create_mcp_server())


if __name__ == "__main__":
    main_stdio()
