#!/usr/bin/env python3
"""
Pre-commit hook that blocks Facebook credentials from being committed.

Backup app and system user tokens are read from the environment only;
this hook fails the commit when a staged file contains something that
looks like a Graph API access token, an app secret or a database password.

Install: Copy to .git/hooks/pre-commit and make executable (chmod +x)
Scan every tracked file instead of the staged ones: check_secrets.py --all
"""

import re
import sys
import subprocess
from pathlib import Path


# Patterns that indicate potential secrets
SECRET_PATTERNS = [
    (r'EAA[A-Za-z0-9]{30,}', 'Facebook access token detected'),
    (r'(?i)(app_secret|client_secret)\s*[=:]\s*["\']?[a-f0-9]{32}\b', 'Facebook app secret detected'),
    (r'(?i)(BACKUP_APP_\d_TOKEN|MAIN_APP_TOKEN)\s*=\s*["\']?(?!<|\{\{|your_)[^\s"\']{20,}', 'App token value detected'),
    (r'(?i)ENCRYPTION_KEY\s*=\s*["\']?(?!change-me|<|\{\{|your_)[^\s"\']{16,}', 'Encryption key value detected'),
    (r'postgresql(\+asyncpg)?://[^:\s/]+:(?!ads_password@|password@)[^@\s]{8,}@', 'Database password detected'),
]

# Files that may hold placeholder credentials
SKIP_FILES = ['SECURITY.md']

# Files to skip by pattern
SKIP_PATTERNS = [
    r'\.git/',
    r'\.venv/',
    r'__pycache__/',
    r'\.pyc$',
    r'\.log$',
    r'\.db$',
    r'\.sqlite',
    r'(^|/)tests/',
]


def git_files(*args):
    """File names printed by a git command (empty outside a repository)"""
    try:
        result = subprocess.run(['git', *args], capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError):
        return []
    return [line for line in result.stdout.splitlines() if line.strip()]


def get_staged_files():
    return git_files('diff', '--cached', '--name-only', '--diff-filter=ACM')


def get_tracked_files():
    return git_files('ls-files')


def should_skip_file(filepath):
    if Path(filepath).name in SKIP_FILES:
        return True
    return any(re.search(pattern, filepath) for pattern in SKIP_PATTERNS)


def mask(value):
    """Show only enough of a match to find it"""
    return value if len(value) <= 10 else f"{value[:6]}...{value[-4:]}"


def scan_text(content, filepath='<text>'):
    """Return one violation per secret-looking match in ``content``"""
    violations = []
    for pattern, message in SECRET_PATTERNS:
        for match in re.finditer(pattern, content, re.MULTILINE):
            violations.append({
                'file': filepath,
                'line': content[:match.start()].count('\n') + 1,
                'message': message,
                'match': mask(match.group(0)),
            })
    return violations


def scan_file(filepath):
    try:
        content = Path(filepath).read_text(encoding='utf-8', errors='ignore')
    except OSError as e:
        print(f"Warning: Could not scan {filepath}: {e}", file=sys.stderr)
        return []
    return scan_text(content, filepath)


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    scan_all = '--all' in argv
    files = get_tracked_files() if scan_all else get_staged_files()

    print(f"Scanning {'tracked' if scan_all else 'staged'} files for Facebook credentials...")
    if not files:
        print("✓ No files to check")
        return 0

    violations = []
    for filepath in files:
        # Deleted files
        if not Path(filepath).exists() or should_skip_file(filepath):
            continue
        violations.extend(scan_file(filepath))

    if not violations:
        print("✓ No secrets detected - commit allowed")
        return 0

    print("\n" + "=" * 70)
    print("❌ SECRET LEAK DETECTED - COMMIT BLOCKED")
    print("=" * 70)
    for v in violations:
        print(f"  {v['file']}:{v['line']}  {v['message']}  ({v['match']})")
    print("\nMove tokens to the environment (.env) and reference them through core.config.settings.")
    return 1


if __name__ == '__main__':
    sys.exit(main())
