"""
数据流分层架构
  Layer 1 – Acquisition  : 行情报文获取（Alpha Vantage）
  Layer 2 – Processing   : 报文解析为标准日线文档
  Layer 3 – Cache        : 文档存储（MongoDB → Redis → 内存）与新鲜度策略
  Layer 4 – Analysis     : 技术指标计算（analysis）与形态分析（patterns）
"""
