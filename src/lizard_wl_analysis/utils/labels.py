"""String formatting utilities for column names and display labels."""

# Acronyms to display in all caps when they appear as whole words.
_LABEL_ACRONYMS = ("id", "cv", "ewl", "rh", "svl", "qc")


def format_column_label(col: str) -> str:
    """
    Convert a column name to a human-readable display label.

    Example: "cv_percent" -> "CV Percent".
    Example: "subject_id" -> "Subject ID".
    """
    words = str(col).replace("_", " ").split()
    return " ".join(
        w.upper() if w.lower() in _LABEL_ACRONYMS else w.capitalize() for w in words
    )


def normalize_column_name(name) -> str:
    """'Subject ID ' -> 'subject_id', 'TEWL g.m2h' -> 'tewl_g_m2h'."""
    return (
        str(name).strip().lower().replace(" ", "_").replace("-", "_").replace(".", "_")
    )
