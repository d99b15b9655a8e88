"""
股票行情与技术分析服务
在付费限流的行情数据提供商与客户端之间提供缓存旁路（cache-aside）访问，
并基于日线序列计算技术指标、K 线形态、趋势/情绪评分与风险指标。

架构分层：
  数据获取层 (Acquisition)  → 从行情数据提供商拉取原始报文
  处理层     (Processing)   → 报文解析为标准 StockDocument
  缓存层     (Cache)        → 文档存储（MongoDB / Redis / 内存）与新鲜度判定
  分析层     (Analysis)     → 技术指标计算与形态识别
"""

__version__ = "1.0.0"
