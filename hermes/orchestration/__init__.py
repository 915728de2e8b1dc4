"""
HERMES orchestration package.

- ModuleOutputStore: latest result per stage, versioned, copy-on-write snapshots
- ContextAssembler: serializes a snapshot into the context handed to a stage
- StageRunner: one stage invocation from input validation to store write
- AggregationEngine: integration stage over the full snapshot, with freshness
- HermesSession: wires the above to a reasoning service and optional persistence
"""
