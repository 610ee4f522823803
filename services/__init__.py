"""LB Collector: load balancer access logs from Pub/Sub to StatsD request counters."""
