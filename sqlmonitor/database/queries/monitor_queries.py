"""
SQL templates for the monitoring pipeline

Live DMV statistics are the primary slow query source; Query Store
runtime statistics are the fallback when the plan cache is empty.
All templates use named parameters.
"""


class MonitorQueries:
    """
    DMV and Query Store templates used by the collectors and the orchestrator
    """

    # ==========================================================================
    # SERVER / DATABASE DISCOVERY
    # ==========================================================================

    LIST_ONLINE_USER_DATABASES = """
    SELECT name AS database_name
    FROM sys.databases
    WHERE database_id > 4
      AND state_desc = 'ONLINE'
    ORDER BY name
    """

    CHECK_QUERY_STORE_ENABLED = """
    SELECT CAST(actual_state AS INT) AS actual_state
    FROM sys.database_query_store_options
    WHERE actual_state IN (1, 2)
    """

    # ==========================================================================
    # SLOW QUERIES - DMV (primary)
    # ==========================================================================

    SLOW_QUERIES_DMV = """
    SELECT TOP (:top_n)
        CAST(qt.text AS NVARCHAR(MAX)) AS query_text,
        DB_NAME(qt.dbid) AS database_name,
        qs.total_elapsed_time / qs.execution_count / 1000.0 AS avg_duration_ms,
        qs.execution_count,
        qs.last_execution_time,
        CAST(qp.query_plan AS NVARCHAR(MAX)) AS query_plan,
        CONVERT(VARCHAR(130), qs.sql_handle, 1) AS query_id
    FROM sys.dm_exec_query_stats qs
    CROSS APPLY sys.dm_exec_sql_text(qs.sql_handle) qt
    OUTER APPLY sys.dm_exec_query_plan(qs.plan_handle) qp
    WHERE qs.total_elapsed_time / qs.execution_count > :threshold_ms * 1000
      AND qt.dbid = DB_ID(:database_name)
      AND qt.text NOT LIKE '%sys.%'
    ORDER BY qs.total_elapsed_time / qs.execution_count DESC
    """

    # ==========================================================================
    # SLOW QUERIES - QUERY STORE (fallback)
    # ==========================================================================

    SLOW_QUERIES_QUERY_STORE = """
    SELECT TOP (:top_n)
        CAST(qt.query_sql_text AS NVARCHAR(MAX)) AS query_text,
        DB_NAME() AS database_name,
        AVG(rs.avg_duration) / 1000.0 AS avg_duration_ms,
        SUM(rs.count_executions) AS execution_count,
        MAX(rs.last_execution_time) AS last_execution_time,
        CAST(q.query_id AS VARCHAR(20)) AS query_id
    FROM sys.query_store_query q
    JOIN sys.query_store_query_text qt ON q.query_text_id = qt.query_text_id
    JOIN sys.query_store_plan p ON q.query_id = p.query_id
    JOIN sys.query_store_runtime_stats rs ON p.plan_id = rs.plan_id
    JOIN sys.query_store_runtime_stats_interval rsi
        ON rs.runtime_stats_interval_id = rsi.runtime_stats_interval_id
    GROUP BY q.query_id, CAST(qt.query_sql_text AS NVARCHAR(MAX))
    HAVING AVG(rs.avg_duration) > :threshold_ms * 1000
    ORDER BY AVG(rs.avg_duration) DESC
    """

    QUERY_TEXT_BY_QUERY_ID = """
    SELECT TOP 1 CAST(qt.query_sql_text AS NVARCHAR(MAX)) AS query_text
    FROM sys.query_store_query_text qt
    JOIN sys.query_store_query q ON qt.query_text_id = q.query_text_id
    WHERE q.query_id = :query_id
    """

    # ==========================================================================
    # INDEX FRAGMENTATION
    # ==========================================================================

    FRAGMENTED_INDEXES = """
    SELECT
        DB_NAME() AS database_name,
        SCHEMA_NAME(o.schema_id) AS schema_name,
        OBJECT_NAME(i.object_id) AS table_name,
        i.name AS index_name,
        ips.avg_fragmentation_in_percent AS fragmentation_percent,
        ips.page_count,
        STATS_DATE(i.object_id, i.index_id) AS last_reindexed
    FROM sys.dm_db_index_physical_stats(DB_ID(), NULL, NULL, NULL, 'LIMITED') ips
    JOIN sys.indexes i ON ips.object_id = i.object_id AND ips.index_id = i.index_id
    JOIN sys.objects o ON i.object_id = o.object_id
    WHERE ips.avg_fragmentation_in_percent > :threshold_percent
      AND ips.page_count > :min_page_count
      AND o.type = 'U'
      AND i.name IS NOT NULL
    ORDER BY ips.avg_fragmentation_in_percent DESC
    """

    # ==========================================================================
    # MISSING INDEXES
    # ==========================================================================

    MISSING_INDEXES = """
    SELECT
        OBJECT_NAME(mid.object_id, mid.database_id) AS table_name,
        mid.statement AS qualified_table,
        mid.equality_columns,
        mid.inequality_columns,
        mid.included_columns,
        CAST(migs.avg_user_impact AS INT) AS improvement_percent
    FROM sys.dm_db_missing_index_group_stats AS migs
    INNER JOIN sys.dm_db_missing_index_groups AS mig ON migs.group_handle = mig.index_group_handle
    INNER JOIN sys.dm_db_missing_index_details AS mid ON mig.index_handle = mid.index_handle
    WHERE mid.database_id = DB_ID(:database_name)
    ORDER BY migs.avg_total_user_cost * migs.avg_user_impact * (migs.user_seeks + migs.user_scans) DESC
    """

    @classmethod
    def get_slow_queries_sql(cls, use_query_store: bool = False) -> str:
        """Pick the slow query template for the requested source"""
        if use_query_store:
            return cls.SLOW_QUERIES_QUERY_STORE
        return cls.SLOW_QUERIES_DMV
