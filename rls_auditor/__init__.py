"""RLS Auditor - exposure auditing for PostgREST/Supabase backends."""

__version__ = "0.1.0"
