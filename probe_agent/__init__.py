"""
SQL Probe Agent

Site-resident agent that lets a remote controller run pre-approved SQL
and read project files on local infrastructure through one outbound
WebSocket connection.

This agent:
1. Initiates an OUTBOUND connection to the controller (no inbound ports)
2. Accepts a signed catalog of approved query templates
3. Executes only templates whose hash appears in that catalog
4. Returns results through the same connection
"""

__version__ = "1.0.0"
__author__ = "SQL Probe Agent"
