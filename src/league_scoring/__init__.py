"""League Scoring MCP Server.

Fantasy scoring for the cannabis market: manufacturers, strains, products,
pharmacies and brands earn points from their weekly performance, and team
lineups are totalled into a league leaderboard.
"""

__version__ = "0.1.0"
