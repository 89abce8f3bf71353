"""Heliotrace — Core Engine Package.

Element geometry and orientation, surface/aperture variants, the scene
lifecycle controller, solar disk sampling and the CPU tracing backend
for concentrated-solar optical scenes.
"""
