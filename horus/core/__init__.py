"""
Core pipeline components: metrics, evidence, visualization, agents, orchestration.
"""
