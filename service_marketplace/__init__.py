"""
IoT Data Marketplace gateway service.
"""
