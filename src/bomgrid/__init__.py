"""bomgrid -- hierarchical rollup and dependent-recalculation engine for tabular grids."""

__version__ = "0.3.0"
__core_api_version__ = 1
