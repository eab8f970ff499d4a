"""
Best-effort translation of Unix shell commands for Windows cmd.exe.

Rules are tried top to bottom and the first whole-command match wins, so the
more specific form of a command (rm -rf) must precede the general one (rm).
"""

import re
from typing import List, Pattern, Tuple

# (pattern, replacement); \1, \2 refer to the pattern's groups.
WINDOWS_TRANSLATIONS: List[Tuple[str, str]] = [
    # files
    (r"^pwd\s*$", "cd"),
    (r"^ls(?:\s+(-[a-zA-Z]*))?(?:\s+(.*))?$", r"dir \2"),
    (r"^cat\s+(.+)$", r"type \1"),
    (r"^rm\s+-rf\s+(.+)$", r"rmdir /s /q \1"),
    (r"^rm\s+-r\s+(.+)$", r"rmdir /s /q \1"),
    (r"^rm\s+(.+)$", r"del /f \1"),
    (r"^cp\s+-r\s+(.+?)\s+(.+)$", r"xcopy \1 \2 /e /i /y"),
    (r"^cp\s+(.+?)\s+(.+)$", r"copy /y \1 \2"),
    (r"^mv\s+(.+?)\s+(.+)$", r"move /y \1 \2"),
    (r"^touch\s+(.+)$", r"type nul > \1"),
    (r"^mkdir\s+-p\s+(.+)$", r"mkdir \1"),
    (r"^mkdir\s+(.+)$", r"mkdir \1"),
    (r"^rmdir\s+(.+)$", r"rmdir \1"),
    (r"^ln\s+-s\s+(.+?)\s+(.+)$", r"mklink \2 \1"),
    (r"^find\s+\.\s+-name\s+(.+)$", r"dir /s /b \1"),
    (r"^tree\s*(.*)$", r"tree \1"),
    (r"^du\s+-sh\s+(.+)$", r"dir /s \1"),
    (r"^du\s+(.+)$", r"dir /s \1"),
    (r"^head\s+-n\s*(\d+)\s+(.+)$", r'powershell -Command "Get-Content \2 -TotalCount \1"'),
    (r"^head\s+(.+)$", r'powershell -Command "Get-Content \1 -TotalCount 10"'),
    (r"^tail\s+-f\s+(.+)$", r'echo Command "tail -f" not supported on Windows CMD. Use PowerShell or Git Bash.'),
    (r"^tail\s+-n\s*(\d+)\s+(.+)$", r'powershell -Command "Get-Content \2 -Tail \1"'),
    (r"^tail\s+(.+)$", r'powershell -Command "Get-Content \1 -Tail 10"'),
    (r"^wc\s+-l\s+(.+)$", r'find /c /v "" \1'),
    (r"^wc\s+(.+)$", r'find /c /v "" \1'),
    (r"^diff\s+(.+?)\s+(.+)$", r"fc \1 \2"),
    (r"^basename\s+(.+)$", r"for %A in (\1) do @echo %~nxA"),
    (r"^dirname\s+(.+)$", r"for %A in (\1) do @echo %~dpA"),
    (r"^realpath\s+(.+)$", r"for %A in (\1) do @echo %~fA"),
    # text
    (r"^grep\s+-r\s+(.+?)\s+(.+)$", r"findstr /s /n \1 \2"),
    (r"^grep\s+-i\s+(.+?)\s+(.+)$", r"findstr /i /n \1 \2"),
    (r"^grep\s+(.+?)\s+(.+)$", r"findstr /n \1 \2"),
    (r"^sort\s+(.+)$", r"sort \1"),
    (r"^uniq\s+(.+)$", r"sort \1 | more"),
    (r"^cut\s+.*$", r'echo Command "cut" not fully supported on Windows CMD.'),
    (r"^tr\s+.*$", r'echo Command "tr" not supported on Windows CMD.'),
    # system
    (r"^whoami\s*$", "whoami"),
    (r"^hostname\s*$", "hostname"),
    (r"^uname\s+-a$", 'ver && echo. && systeminfo | findstr "OS"'),
    (r"^uname\s+-m$", "echo %PROCESSOR_ARCHITECTURE%"),
    (r"^uname\s+-n$", "hostname"),
    (r"^uname(\s+-[sr])?\s*$", "ver"),
    (r"^uptime\s*$", 'systeminfo | findstr "Boot"'),
    (r"^date\s*$", "date /t"),
    (r"^df(\s+-h)?\s*$", "wmic logicaldisk get caption,freespace,size"),
    (r"^free\b.*$", 'systeminfo | findstr "Memory"'),
    (r"^env\s*$", "set"),
    (r"^printenv\s*$", "set"),
    (r"^export\s+(\w+)=(.+)$", r"set \1=\2"),
    (r"^echo\s+(.+)$", r"echo \1"),
    # processes
    (r"^h?top\s*$", "tasklist"),
    (r"^ps\s+(aux|-ef)$", "tasklist /v"),
    (r"^ps\s*$", "tasklist"),
    (r"^kill\s+-9\s+(.+)$", r"taskkill /f /pid \1"),
    (r"^kill\s+(.+)$", r"taskkill /pid \1"),
    (r"^(killall|pkill)\s+(.+)$", r"taskkill /im \2 /f"),
    (r"^pgrep\s+(.+)$", r"tasklist | findstr \1"),
    (r"^sleep\s+(\d+)$", r"timeout /t \1 /nobreak"),
    # network
    (r"^ifconfig\s*$", "ipconfig"),
    (r"^traceroute\s+(.+)$", r"tracert \1"),
    (r"^dig\s+(.+)$", r"nslookup \1"),
    (r"^wget\s+(.+)$", r"curl -O \1"),
    (r"^lsof\s+-i:(\d+)$", r"netstat -ano | findstr :\1"),
    (r"^lsof\s*$", "netstat -ano"),
    # archives
    (r"^unzip\s+(.+)$", r"tar -x -f \1"),
    (r"^zip\s+-r\s+(.+?)\s+(.+)$", r"tar -a -c -f \1 \2"),
    # users and permissions
    (r"^sudo\s+(.+)$", r'runas /user:Administrator "\1"'),
    (r"^chmod\s+(.+?)\s+(.+)$", r"icacls \2 /grant Everyone:F"),
    (r"^chown\s+(.+?)\s+(.+)$", r"takeown /f \2"),
    (r"^id\s*$", "whoami /all"),
    (r"^groups\s*$", "whoami /groups"),
    # shell built-ins
    (r"^(which|whereis)\s+(.+)$", r"where \2"),
    (r"^alias\s+(\w+)=(.+)$", r"doskey \1=\2"),
    (r"^history\s*$", "doskey /history"),
    (r"^clear\s*$", "cls"),
    (r"^(source|\.)\s+(.+)$", r"call \2"),
]

UNSUPPORTED_ON_WINDOWS = frozenset({
    "awk", "sed", "vim", "vi", "nano", "emacs", "less", "more", "man",
    "xargs", "ssh", "scp", "rsync", "make", "gcc", "g++", "perl",
})

_COMPILED: List[Tuple[Pattern[str], str]] = [
    (re.compile(pattern, re.IGNORECASE), replacement)
    for pattern, replacement in WINDOWS_TRANSLATIONS
]


def is_windows(platform: str) -> bool:
    return platform.startswith("win")


def translate_command(command: str, platform: str) -> str:
    """Rewrite command for platform; non-Windows platforms get it back unchanged."""
    if not is_windows(platform):
        return command
    stripped = command.strip()
    for pattern, replacement in _COMPILED:
        if pattern.search(stripped):
            return pattern.sub(replacement, stripped, count=1).strip()
    parts = stripped.split()
    name = parts[0].lower() if parts else ""
    if name in UNSUPPORTED_ON_WINDOWS:
        return (
            f"echo Command '{name}' is not available on Windows. "
            "Install Git Bash or WSL for full Unix compatibility."
        )
    return command
