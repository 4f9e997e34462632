"""Centralized GitHub token lookup for release queries and git access.

Token Architecture:
- GITHUB_TOKEN: PAT used for GitHub API release queries and private clones
- GH_TOKEN: token exported by the GitHub CLI, used as a fallback
- RMM_GITHUB_TOKEN: rmm-specific override, checked first for module access
"""

import os
import re
from typing import Dict, Mapping, Optional


class GitHubTokenManager:
    """Picks the right GitHub token for each kind of access."""

    # Define token precedence for different use cases
    TOKEN_PRECEDENCE = {
        'releases': ['RMM_GITHUB_TOKEN', 'GITHUB_TOKEN', 'GH_TOKEN'],
        'modules': ['RMM_GITHUB_TOKEN', 'GITHUB_TOKEN', 'GH_TOKEN'],
    }

    def get_token_for_purpose(self, purpose: str, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
        """Get the best available token for a specific purpose.

        Args:
            purpose: Token purpose ('releases', 'modules')
            env: Environment to check (defaults to os.environ)

        Returns:
            Trimmed token, or None when no non-empty token is set
        """
        if env is None:
            env = os.environ

        if purpose not in self.TOKEN_PRECEDENCE:
            raise ValueError(f"Unknown purpose: {purpose}")

        for token_var in self.TOKEN_PRECEDENCE[purpose]:
            token = (env.get(token_var) or "").strip()
            if token:
                return token
        return None

    def setup_git_environment(self, env: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Environment for non-interactive git subprocesses."""
        if env is None:
            env = os.environ.copy()
        env['GIT_TERMINAL_PROMPT'] = '0'
        env['GIT_ASKPASS'] = 'echo'  # Prevent interactive credential prompts
        return env


def sanitize_secrets(message: str) -> str:
    """Remove tokens that may appear in error messages or URLs."""
    # Remove any tokens that might appear in URLs (format: https://token@host)
    sanitized = re.sub(r'https://[^@\s/]+@', 'https://***@', message)

    # Remove any tokens that might appear as standalone values
    sanitized = re.sub(r'(ghp_|gho_|ghu_|ghs_|ghr_|github_pat_)[a-zA-Z0-9_]+', '***', sanitized)

    # Remove environment variable values that might contain tokens
    sanitized = re.sub(r'(GITHUB_TOKEN|GH_TOKEN|RMM_GITHUB_TOKEN)=[^\s]+', r'\1=***', sanitized)

    return sanitized
