"""Fargate Deploy Pipeline (FDP).

Push-to-deploy walkthrough for a small containerised web service:
 - a backend with a dedicated health route behind a reverse proxy
 - a linear pipeline: build, push, register task revision, update service
 - rolling updates gated on load balancer health checks
 - a local single-node platform mirroring the ECS/ECR/ALB contracts
"""
