"""Nginx Auto-Config (NAC).

Watches Docker container start/stop events on one bridge network and keeps a
pair of generated nginx include files (upstreams + servers) converged with the
running containers' `nginx.*` labels:
 - full rebuild on every relevant event, plus a catch-up rebuild at startup
 - staged candidate files, promoted only after `nginx -t` accepts them
 - graceful `nginx -s reload` after each promotion

The watcher is meant to run under a process supervisor; losing the docker event
stream ends the process with a non-zero status.
"""
