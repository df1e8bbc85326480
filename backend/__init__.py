"""Attendance and leave management backend."""
