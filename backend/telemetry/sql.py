from __future__ import annotations

CREATE_EVENTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS query_events (
  ts_ms BIGINT,
  collection TEXT,
  query_type TEXT,
  plan TEXT,
  format TEXT,
  limit_n INTEGER,
  number_returned INTEGER,
  total_ms DOUBLE
);
"""

SUMMARY_SQL_TEMPLATE = """
SELECT
  query_type,
  format,
  COUNT(*) AS n,
  AVG(total_ms) AS avg_total_ms,
  quantile_cont(total_ms, 0.50) AS p50_total_ms,
  quantile_cont(total_ms, 0.95) AS p95_total_ms,
  quantile_cont(total_ms, 0.99) AS p99_total_ms,
  AVG(number_returned) AS avg_returned
FROM query_events
{where_sql}
GROUP BY query_type, format
ORDER BY query_type, format
"""

SLOWEST_SQL_TEMPLATE = """
SELECT
  ts_ms,
  collection,
  query_type,
  plan,
  format,
  limit_n,
  number_returned,
  total_ms
FROM query_events
{where_sql}
ORDER BY total_ms DESC
LIMIT ?
"""

INSERT_EVENTS_SQL = """
INSERT INTO query_events
  (ts_ms, collection, query_type, plan, format, limit_n, number_returned, total_ms)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""
