"""CSS theme for the clawlink TUI using Dracula colors."""

# Dracula color palette
PINK = "#FF79C6"
PURPLE = "#BD93F9"
CYAN = "#8BE9FD"
GREEN = "#50FA7B"
YELLOW = "#F1FA8C"
RED = "#FF5555"
FG = "#F8F8F2"
FG_DIM = "#6272A4"
BG = "#282A36"

CLAWLINK_CSS = f"""
Screen {{
    background: {BG};
}}

#title {{
    width: 100%;
    height: 1;
    padding: 0 1;
}}

ConnectionStatus {{
    width: 100%;
    height: 1;
    padding: 0 1;
    color: {FG};
}}

ChatPanel {{
    width: 100%;
    height: 1fr;
    border: solid {FG_DIM};
    background: transparent;
}}
"""
