"""
Campaign intelligence: snapshots, pattern learning and rule automation.

Modules:
    metrics: Derived metric formulas and insights row parsing
    backfill: Hourly collection, historical backfill and its progress rows
    patterns: Statistical pattern learning (time, profiles, clusters, fatigue)
    rules_engine: Automation rules, templates and action approval
    action_executor: Applies approved actions through the Graph API
    scheduler: Hourly / daily APScheduler jobs

Everything here reads and writes ``intel_*`` tables only. Campaigns are
changed solely by ActionExecutor, and only for approved actions.
"""
