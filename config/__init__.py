"""Deployment configuration for the SOC estimator"""
