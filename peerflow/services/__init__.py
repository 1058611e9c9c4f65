"""Transactional services. Each takes an ``AsyncSession`` whose transaction the caller owns."""
